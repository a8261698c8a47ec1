"""
Notifications module: in-app notifications, per-user email preferences and
the outbound mailer.
"""
