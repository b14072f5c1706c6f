"""
Rate limiting: counter stores, rule matcher and violation log.
"""
