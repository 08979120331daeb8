"""
auth — request authentication boundary.

Provides:
  • Signed bearer token creation & verification
  • ``get_current_user_id`` FastAPI dependency

User accounts and subscriptions are owned elsewhere; this package only
answers "who is calling".
"""
