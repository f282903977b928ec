"""
CORE App - Session, roles and error kinds for FLEETLINE
"""
