"""
Complaint templates: staff-authored starting points for common complaints
that prefill the portal's new complaint form.
"""
