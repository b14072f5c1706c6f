"""
Access control evaluation.
"""
