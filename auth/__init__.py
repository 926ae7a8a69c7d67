"""
auth — caller identity for the linking API.

Provides:
  • Signed bearer token verification
  • ``get_current_user_id`` FastAPI dependency
"""
