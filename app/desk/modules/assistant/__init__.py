"""
AI assistant module: staff smart replies, the student help chat, and the
curated Q&A rows that ground the chat.
"""
