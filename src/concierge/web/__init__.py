"""JSON API for approvals and agent status.

Provides a FastAPI app that:
- Lists calendar operations waiting for approval
- Issues, validates and redeems approval tokens
- Reports discovery sessions and agent health
- Runs the production pipeline on a background schedule
"""

from concierge.web.app import create_app

__all__ = ["create_app"]
