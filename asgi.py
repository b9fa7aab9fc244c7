"""
asgi.py -- Deployment entry points for SessionVault.

  uvicorn asgi:app --reload         HTTP API (api/main.py)
  asgi.authorizer                   gateway authorizer handler (auth/decision.py)

The authorizer is deployed as its own function in front of the API. It shares
the token codec with the API but nothing else.
"""

from api.main import app
from auth.decision import handler as authorizer

__all__ = ["app", "authorizer"]
