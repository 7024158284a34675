"""
Alerts Application Layer
"""
