"""Actor (staff identity) schema."""

from pydantic import BaseModel


class Actor(BaseModel):
    """Identity performing an action, as supplied by the session provider."""

    id: str
    name: str = ""
    role: str
