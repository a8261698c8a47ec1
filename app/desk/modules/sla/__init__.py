"""
SLA module.

Per-priority response/resolution windows, breach classification, the
monitor that flags at-risk/breached tickets, and the admin pages for both.
"""
