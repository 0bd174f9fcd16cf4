"""Microsoft Graph authentication.

Usage:
    from concierge.auth import GraphAuth

    auth = GraphAuth.from_config(config.auth)
    token = auth.get_access_token()
"""

from concierge.auth.msal_auth import GraphAuth

__all__ = ["GraphAuth"]
