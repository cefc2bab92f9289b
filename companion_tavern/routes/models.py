"""Pydantic request bodies for API endpoints.

Turn input and customization bodies reuse the domain models directly.
"""

from pydantic import BaseModel


class CheckConnectionBody(BaseModel):
    api_base: str
    api_key: str = ""
