"""
AutoForge HTTP server.
"""
