"""
Search module: complaint filters shared by the admin list and exports, plus
per-user saved filters.
"""
