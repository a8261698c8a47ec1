"""
Content module: announcements, canned responses, FAQs, knowledge base
articles, and the category/tag reference data.
"""
