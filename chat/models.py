from dataclasses import dataclass, field
from datetime import datetime

from django.utils import timezone

USER = "user"
ASSISTANT = "assistant"

ROLE_CHOICES = [
    (USER, "user"),
    (ASSISTANT, "assistant"),
]


@dataclass(frozen=True)
class Message:
    """One turn of the conversation.

    Messages are plain in-memory records, not ORM rows: the store owns them
    for the lifetime of the process.
    """
    id: int
    role: str
    content: str
    created_at: datetime = field(default_factory=timezone.now)
    fallback: bool = False  # assistant text produced without the model

    def __str__(self):
        return f"{self.role}#{self.id}"

    def as_prompt(self) -> dict:
        return {"role": self.role, "content": self.content}
