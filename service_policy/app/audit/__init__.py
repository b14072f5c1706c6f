"""
Administrative audit trail.
"""
