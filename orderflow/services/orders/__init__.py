"""
Order service package.

This package contains the order orchestrator, the order state policy, merge
strategies, persistence contracts and background tasks.
"""
