"""
LOGISTICS App - Delivery lifecycle, pricing and ratings for FLEETLINE
"""
