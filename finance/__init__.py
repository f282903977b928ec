"""
FINANCE App - Wallet ledger for FLEETLINE
"""
