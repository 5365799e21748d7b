"""
Payment package: payment method handler contract, payment/refund state
machines and the payment service.
"""
