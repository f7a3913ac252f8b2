"""
Queue processors — the typed consumers behind the messages, receipts and presence queues.
"""
