"""
Login identity provider client.
"""
