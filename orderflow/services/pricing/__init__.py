"""
Pricing package: the order pricing engine and its tax, shipping and promotion
policies.
"""
