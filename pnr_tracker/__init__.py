"""
PNR status tracker
Periodic status checks, change detection and notification delivery
"""
__version__ = "1.0.0"
