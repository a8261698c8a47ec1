"""
Complaints module.

Ticket lifecycle (create, triage, assign, comment, escalate, merge, close),
attachments, tags, watchers and satisfaction surveys. Students use the portal
blueprint; staff use the admin blueprint.
"""
