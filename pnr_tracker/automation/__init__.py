"""Background automation"""
