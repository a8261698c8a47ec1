"""
Public complaint widget: an embeddable, unauthenticated JSON API for
submitting complaints from other sites.
"""
