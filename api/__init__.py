"""
HTTP facade for the business card extraction pipeline.
"""
