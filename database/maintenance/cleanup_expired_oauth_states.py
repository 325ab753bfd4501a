#!/usr/bin/env python3
"""
Delete expired HMRC OAuth states
"""
from calceum.database import SessionLocal
from calceum.app.hmrc_integration.state_store import cleanup_expired_oauth_states

db = SessionLocal()
try:
    removed = cleanup_expired_oauth_states(db)
    print(f"Removed {removed} expired OAuth states")
finally:
    db.close()
