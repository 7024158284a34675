"""
Identity Application Layer
Token resolution and capability checks
"""
