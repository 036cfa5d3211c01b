"""Core services of the status-tracking pipeline"""
