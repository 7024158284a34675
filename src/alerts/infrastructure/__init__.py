"""Alerts Infrastructure - listener connection, WebSocket fan-out, escalation"""
