"""
Domain models for the order aggregate and the reference entities it consumes.
"""
