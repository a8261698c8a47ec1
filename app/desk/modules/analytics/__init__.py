"""
Analytics module: dashboard statistics, breakdowns, trends and CSV/XLSX
exports of the complaint list.
"""
