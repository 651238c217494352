"""Python chat client for the parley backend.

Mirrors the browser page: it keeps a disposable copy of the conversation,
an input buffer and an in-flight flag, and replaces the whole list with the
server's answer after every successful request.
"""
import logging
from dataclasses import dataclass

import httpx

log = logging.getLogger("parley")

TIMELINE_SIZE = 4
PREVIEW_CHARS = 60
SEND_ERROR = "Error sending message. Check the log."


@dataclass(frozen=True)
class SessionStats:
    total: int
    user_turns: int
    assistant_replies: int


@dataclass(frozen=True)
class TimelineEntry:
    id: int
    label: str
    preview: str


def role_label(role):
    return "You" if role == "user" else "AI"


def preview(content, limit=PREVIEW_CHARS):
    return (content[:limit] + "…") if len(content) > limit else content


class ChatClient:
    def __init__(self, base_url="http://localhost:5000", transport=None, alert=None, timeout=None):
        self.messages: list[dict] = []
        self.input = ""
        self.loading = False
        self.alert = alert or log.error
        self._http = httpx.Client(base_url=base_url, transport=transport, timeout=timeout)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ---------- requests ----------
    def load_history(self):
        try:
            r = self._http.get("/api/messages")
            r.raise_for_status()
            self.messages = r.json()["messages"]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            log.error("Error fetching messages: %s", e)
        return self.messages

    @property
    def can_send(self):
        return bool(self.input.strip()) and not self.loading

    def send(self):
        """Submit the input buffer. Returns True when the server accepted it."""
        if not self.can_send:
            return False

        self.loading = True
        try:
            r = self._http.post("/api/messages", json={"content": self.input})
            r.raise_for_status()
            self.messages = r.json()["messages"]
            self.input = ""
            return True
        except (httpx.HTTPError, ValueError, KeyError) as e:
            log.error("Error sending message: %s", e)
            self.alert(SEND_ERROR)
            return False
        finally:
            self.loading = False

    # ---------- input ----------
    def handle_key(self, key, shift=False):
        """Enter sends, Shift+Enter inserts a newline.

        Returns True when the key was consumed, i.e. the caller must not
        insert it into the buffer itself.
        """
        if key != "Enter":
            return False
        if shift:
            self.input += "\n"
        else:
            self.send()
        return True

    # ---------- derived views ----------
    def stats(self):
        return SessionStats(
            total=len(self.messages),
            user_turns=len([m for m in self.messages if m["role"] == "user"]),
            assistant_replies=len([m for m in self.messages if m["role"] == "assistant"]),
        )

    def timeline(self, limit=TIMELINE_SIZE):
        recent = self.messages[-limit:] if limit > 0 else []
        return [
            TimelineEntry(id=m["id"], label=role_label(m["role"]), preview=preview(m["content"]))
            for m in reversed(recent)
        ]
