import logging
import threading
import time
from functools import lru_cache

from django.conf import settings
from django.core.signals import setting_changed
from django.dispatch import receiver
from django.utils.module_loading import import_string
from django.utils.text import Truncator

from .exceptions import UpstreamError, ValidationError
from .models import ASSISTANT, USER, Message
from .store import MessageStore

log = logging.getLogger("parley")

DEFAULT_SYSTEM_PROMPT = "You are a friendly helpful assistant."
PLACEHOLDER_REPLY = "I could not generate a response."
FALLBACK_TEMPLATE = 'Fallback reply (AI error). I still received your message: "{content}"'


def fallback_reply(content: str) -> str:
    return FALLBACK_TEMPLATE.format(content=content)


class ChatService:
    """Runs a chat turn: store the user message, ask the model, store the reply.

    A submission never fails because of the completion service. Upstream
    errors are logged and replaced by a fallback reply flagged with
    ``fallback=True``, so callers always get the conversation back.
    """

    def __init__(self, store: MessageStore, backend, system_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self.store = store
        self.backend = backend
        self.system_prompt = system_prompt
        self._turn_lock = threading.Lock()

    def list_messages(self) -> list[Message]:
        return self.store.list()

    def build_prompt(self) -> list[dict]:
        prompt = [{"role": "system", "content": self.system_prompt}]
        prompt.extend(m.as_prompt() for m in self.store.list())
        return prompt

    def submit(self, content) -> list[Message]:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content is required")

        with self._turn_lock:
            user_id = self.store.allocate_id(int(time.time() * 1000))
            self.store.append(Message(id=user_id, role=USER, content=content))

            fallback = False
            try:
                reply = self.backend.complete(self.build_prompt()) or PLACEHOLDER_REPLY
            except UpstreamError as e:
                log.warning("Completion error: %s | prompt=%s", e, Truncator(content).chars(120))
                reply, fallback = fallback_reply(content), True
            except Exception:
                log.exception("Completion backend %r failed | prompt=%s", self.backend, Truncator(content).chars(120))
                reply, fallback = fallback_reply(content), True

            self.store.append(Message(id=user_id + 1, role=ASSISTANT, content=reply, fallback=fallback))
            return self.store.list()


@lru_cache(maxsize=1)
def get_chat_service() -> ChatService:
    store = import_string(settings.CHAT_MESSAGE_STORE)()
    backend = import_string(settings.CHAT_COMPLETION_BACKEND)()
    log.info("Chat service ready | store=%s backend=%r",
             type(store).__name__, backend)
    return ChatService(store, backend, system_prompt=settings.CHAT_SYSTEM_PROMPT)


@receiver(setting_changed)
def _reset_chat_service(setting, **kwargs):
    if setting.startswith(("CHAT_", "OPENAI_")):
        get_chat_service.cache_clear()
