"""
Alerts
Database NOTIFY → live WebSocket push, with escalation for severe events
"""
