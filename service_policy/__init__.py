"""
Policy Resolution Service.
"""
