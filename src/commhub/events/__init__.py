"""
Canonical events and their delivery (real-time subscribers, tenant webhooks).
"""
