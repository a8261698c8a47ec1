"""
Assignment rules: route new complaints to a staff member by category,
priority or keywords.
"""
