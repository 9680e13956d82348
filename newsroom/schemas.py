"""
Pydantic schemas for API request bodies
"""
from pydantic import BaseModel
from typing import Optional


class ClearCacheRequest(BaseModel):
    """Body of the cache-clear endpoint; omit pattern to clear everything."""
    token: Optional[str] = None
    pattern: Optional[str] = None


class TokenRequest(BaseModel):
    """Body of the token validation endpoint"""
    token: Optional[str] = None
