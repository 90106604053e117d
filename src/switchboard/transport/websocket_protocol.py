"""WebSocket message protocol definitions.

Every message exchanged with a UI surface or an SPA server is a JSON-encoded
topic-tagged envelope.
"""

from typing import Any

from pydantic import BaseModel, Field


class Envelope(BaseModel):
    """Topic-tagged message.

    ``data`` is topic specific and validated by the handler for that topic.
    """

    topic: str = Field(..., min_length=1, description="Message topic")
    data: Any = Field(default_factory=dict, description="Topic-specific payload")
