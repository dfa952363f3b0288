"""
Authentication package for the Harvest CLI.

This package contains the credential store and its secret backends, the
OAuth login flow with its local callback listener, the access token cache
and Personal Access Token support.
"""
