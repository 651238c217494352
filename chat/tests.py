import io
import json
from unittest.mock import patch

import httpx
from django.core.management import call_command
from django.test import SimpleTestCase, override_settings
from django.urls import reverse

from .client import ChatClient, SessionStats
from .completion import OpenAICompletionBackend
from .exceptions import UpstreamError, ValidationError
from .management.commands.runserver import Command as RunserverCommand
from .serializers import MessageSerializer
from .services import PLACEHOLDER_REPLY, ChatService, get_chat_service
from .store import InMemoryMessageStore

FALLBACK_HELLO = 'Fallback reply (AI error). I still received your message: "hello"'


class StubBackend:
    """Completion backend double that records the prompts it receives."""

    def __init__(self, reply="Hi there!", error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def complete(self, messages):
        self.prompts.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply


def completion_transport(reply="Hi there!", status=200, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json={"choices": [{"message": {"role": "assistant", "content": reply}}]})
    return httpx.MockTransport(handler)


class MessageStoreTests(SimpleTestCase):
    def test_allocate_id_uses_clock_and_reserves_reply_id(self):
        store = InMemoryMessageStore()
        self.assertEqual(store.allocate_id(1000), 1000)
        # same millisecond again: 1001 is reserved for the first reply
        self.assertEqual(store.allocate_id(1000), 1002)
        self.assertEqual(store.allocate_id(5000), 5000)

    def test_list_returns_copy(self):
        store = InMemoryMessageStore()
        service = ChatService(store, StubBackend())
        service.submit("hello")
        snapshot = store.list()
        snapshot.clear()
        self.assertEqual(len(store.list()), 2)

    def test_clear(self):
        store = InMemoryMessageStore()
        ChatService(store, StubBackend()).submit("hello")
        store.clear()
        self.assertEqual(store.list(), [])
        self.assertEqual(len(store), 0)


class ChatServiceTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryMessageStore()
        self.backend = StubBackend()
        self.service = ChatService(self.store, self.backend)

    def test_submit_appends_user_then_assistant(self):
        result = self.service.submit("hello")
        self.assertEqual([m.role for m in result], ["user", "assistant"])
        self.assertEqual(result[0].content, "hello")
        self.assertEqual(result[1].content, "Hi there!")
        self.assertFalse(result[1].fallback)

    def test_assistant_id_is_user_id_plus_one(self):
        self.service.submit("one")
        result = self.service.submit("two")
        for user, assistant in zip(result[::2], result[1::2]):
            self.assertEqual(assistant.id, user.id + 1)
        ids = [m.id for m in result]
        self.assertEqual(ids, sorted(set(ids)))

    def test_empty_or_whitespace_is_rejected_without_mutation(self):
        for content in ["", "   ", "\n\t", None, 42]:
            with self.assertRaises(ValidationError):
                self.service.submit(content)
        self.assertEqual(self.service.list_messages(), [])
        self.assertEqual(self.backend.prompts, [])

    def test_content_is_stored_verbatim(self):
        result = self.service.submit("  padded  ")
        self.assertEqual(result[0].content, "  padded  ")

    def test_prompt_has_system_instruction_and_full_history(self):
        self.service.submit("first")
        self.service.submit("second")
        prompt = self.backend.prompts[-1]
        self.assertEqual(prompt[0], {"role": "system", "content": "You are a friendly helpful assistant."})
        self.assertEqual(
            [m["content"] for m in prompt[1:]],
            ["first", "Hi there!", "second"],
        )

    def test_upstream_failure_appends_fallback(self):
        self.backend.error = UpstreamError("quota exceeded")
        with self.assertLogs("parley", level="WARNING"):
            result = self.service.submit("hello")
        self.assertEqual(len(result), 2)
        self.assertEqual(result[1].content, FALLBACK_HELLO)
        self.assertTrue(result[1].fallback)

    def test_empty_reply_uses_placeholder(self):
        self.backend.reply = None
        result = self.service.submit("hello")
        self.assertEqual(result[1].content, PLACEHOLDER_REPLY)
        self.assertFalse(result[1].fallback)

    def test_unexpected_backend_error_still_pairs_a_fallback(self):
        self.backend.error = RuntimeError("boom")
        with self.assertLogs("parley", level="ERROR"):
            result = self.service.submit("hello")
        self.assertEqual([m.role for m in result], ["user", "assistant"])
        self.assertEqual(result[1].content, FALLBACK_HELLO)
        self.assertTrue(result[1].fallback)
        self.assertEqual(len(self.store), 2)

    def test_invalid_base_url_falls_back(self):
        backend = OpenAICompletionBackend(
            api_key="sk-test",
            base_url="https://api.example:notaport/v1",
            transport=completion_transport(),
        )
        service = ChatService(self.store, backend)
        with self.assertLogs("parley", level="WARNING"):
            result = service.submit("hello")
        self.assertEqual(len(result), 2)
        self.assertEqual(result[1].content, FALLBACK_HELLO)


class CompletionBackendTests(SimpleTestCase):
    def _backend(self, transport, api_key="sk-test"):
        return OpenAICompletionBackend(
            api_key=api_key,
            base_url="https://llm.example/v1/",
            model="gpt-4o-mini",
            transport=transport,
        )

    def test_returns_reply_and_sends_model_and_credentials(self):
        seen = []
        backend = self._backend(completion_transport("  Hello!  ", seen=seen))
        reply = backend.complete([{"role": "user", "content": "hi"}])

        self.assertEqual(reply, "Hello!")
        request = seen[0]
        self.assertEqual(str(request.url), "https://llm.example/v1/chat/completions")
        self.assertEqual(request.headers["authorization"], "Bearer sk-test")
        body = json.loads(request.content)
        self.assertEqual(body["model"], "gpt-4o-mini")
        self.assertEqual(body["messages"], [{"role": "user", "content": "hi"}])

    def test_error_status_raises_upstream_error(self):
        backend = self._backend(completion_transport(status=401))
        with self.assertRaises(UpstreamError):
            backend.complete([{"role": "user", "content": "hi"}])

    def test_network_error_raises_upstream_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = self._backend(httpx.MockTransport(handler))
        with self.assertRaises(UpstreamError):
            backend.complete([{"role": "user", "content": "hi"}])

    def test_non_json_body_raises_upstream_error(self):
        backend = self._backend(httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")))
        with self.assertRaises(UpstreamError):
            backend.complete([{"role": "user", "content": "hi"}])

    def test_malformed_payload_returns_none(self):
        for payload in [{}, {"choices": []}, {"choices": [{"message": {}}]}, ["nope"]]:
            backend = self._backend(httpx.MockTransport(lambda request, p=payload: httpx.Response(200, json=p)))
            self.assertIsNone(backend.complete([{"role": "user", "content": "hi"}]))

    def test_missing_api_key_raises_without_request(self):
        seen = []
        backend = self._backend(completion_transport(seen=seen), api_key="")
        with self.assertRaises(UpstreamError):
            backend.complete([{"role": "user", "content": "hi"}])
        self.assertEqual(seen, [])

    def test_invalid_base_url_raises_upstream_error(self):
        backend = OpenAICompletionBackend(
            api_key="sk-test",
            base_url="https://api.example:notaport/v1",
            transport=completion_transport(),
        )
        with self.assertRaises(UpstreamError):
            backend.complete([{"role": "user", "content": "hi"}])

    @override_settings(CHAT_CONNECT_TIMEOUT=None, CHAT_REQUEST_TIMEOUT=None)
    def test_unconfigured_timeouts_keep_client_default(self):
        backend = self._backend(completion_transport())
        self.assertIsNone(backend.client_timeout())
        self.assertEqual(backend.complete([{"role": "user", "content": "hi"}]), "Hi there!")

    def test_configured_timeouts(self):
        backend = OpenAICompletionBackend(
            api_key="sk-test", connect_timeout=3.0, request_timeout=30.0, transport=completion_transport(),
        )
        timeout = backend.client_timeout()
        self.assertEqual(timeout.connect, 3.0)
        self.assertEqual(timeout.read, 30.0)


class MessagesApiTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryMessageStore()
        self.backend = OpenAICompletionBackend(api_key="sk-test", transport=completion_transport("Hi there!"))
        self.service = ChatService(self.store, self.backend)
        patcher = patch("chat.views.get_chat_service", return_value=self.service)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.url = reverse("messages")

    def _post(self, body):
        return self.client.post(self.url, body, content_type="application/json")

    def test_list_empty(self):
        resp = self.client.get(self.url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"messages": []})

    def test_submit_hello_end_to_end(self):
        resp = self._post({"content": "hello"})
        self.assertEqual(resp.status_code, 200)
        messages = resp.json()["messages"]
        self.assertEqual([m["role"] for m in messages], ["user", "assistant"])
        self.assertEqual(messages[0]["content"], "hello")
        self.assertEqual(messages[1]["content"], "Hi there!")
        self.assertEqual(messages[1]["id"], messages[0]["id"] + 1)
        self.assertFalse(messages[1]["fallback"])
        self.assertIsInstance(messages[0]["createdAt"], str)

    def test_submit_falls_back_with_200_when_upstream_fails(self):
        self.backend.api_key = ""
        with self.assertLogs("parley", level="WARNING"):
            resp = self._post({"content": "hello"})
        self.assertEqual(resp.status_code, 200)
        messages = resp.json()["messages"]
        self.assertEqual(len(messages), 2)
        self.assertEqual(messages[1]["content"], FALLBACK_HELLO)
        self.assertTrue(messages[1]["fallback"])

    def test_invalid_content_is_rejected(self):
        for body in [{"content": ""}, {"content": "   "}, {}, {"content": 7}, {"content": None}, ["hello"]]:
            resp = self._post(body)
            self.assertEqual(resp.status_code, 400, body)
            self.assertEqual(resp.json(), {"error": "Message content is required"})
        self.assertEqual(self.client.get(self.url).json(), {"messages": []})

    def test_malformed_json_is_a_400_with_error(self):
        resp = self.client.post(self.url, data="{not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("error", resp.json())

    def test_list_is_idempotent(self):
        self._post({"content": "hello"})
        first = self.client.get(self.url).json()
        second = self.client.get(self.url).json()
        self.assertEqual(first, second)

    def test_submission_extends_previous_history(self):
        self._post({"content": "one"})
        before = self.client.get(self.url).json()["messages"]
        after = self._post({"content": "two"}).json()["messages"]
        self.assertEqual(after[:len(before)], before)
        self.assertEqual(len(after), len(before) + 2)

    def test_method_not_allowed(self):
        resp = self.client.delete(self.url)
        self.assertEqual(resp.status_code, 405)
        self.assertIn("error", resp.json())


class PagesTests(SimpleTestCase):
    def test_liveness(self):
        resp = self.client.get("/")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp["Content-Type"].startswith("text/plain"))
        self.assertIn(b"Backend working", resp.content)

    def test_health(self):
        resp = self.client.get(reverse("health"))
        self.assertEqual(resp.json(), {"status": "ok", "app": "parley", "version": 1})

    @override_settings(CHAT_MODEL="test-model")
    def test_index_page(self):
        resp = self.client.get(reverse("index"))
        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "Session overview")
        self.assertContains(resp, "test-model")


@override_settings(
    OPENAI_API_KEY="",
    CHAT_MESSAGE_STORE="chat.store.InMemoryMessageStore",
    CHAT_COMPLETION_BACKEND="chat.completion.OpenAICompletionBackend",
)
class DefaultWiringTests(SimpleTestCase):
    def test_service_is_built_from_settings_and_cached(self):
        service = get_chat_service()
        self.assertIsInstance(service.store, InMemoryMessageStore)
        self.assertIsInstance(service.backend, OpenAICompletionBackend)
        self.assertIs(get_chat_service(), service)

    def test_settings_change_rebuilds_service(self):
        service = get_chat_service()
        with self.settings(CHAT_MODEL="other-model"):
            self.assertIsNot(get_chat_service(), service)
            self.assertEqual(get_chat_service().backend.model, "other-model")

    def test_missing_key_still_answers(self):
        with self.assertLogs("parley", level="WARNING"):
            resp = self.client.post(reverse("messages"), {"content": "hello"}, content_type="application/json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["messages"][-1]["content"], FALLBACK_HELLO)


def fake_backend_transport(service, fail_posts=False, failed_posts=0):
    """Serve /api/messages from an in-process ChatService.

    ``failed_posts`` makes only the first N submissions answer 502.
    """
    remaining_failures = [failed_posts]

    def handler(request):
        if request.url.path != "/api/messages":
            return httpx.Response(404)
        if request.method == "POST":
            if fail_posts:
                return httpx.Response(502)
            if remaining_failures[0] > 0:
                remaining_failures[0] -= 1
                return httpx.Response(502)
            try:
                service.submit(json.loads(request.content).get("content"))
            except ValidationError as e:
                return httpx.Response(400, json={"error": str(e)})
        data = MessageSerializer(service.list_messages(), many=True).data
        return httpx.Response(200, json={"messages": json.loads(json.dumps(data))})
    return httpx.MockTransport(handler)


class ChatClientTests(SimpleTestCase):
    def setUp(self):
        self.service = ChatService(InMemoryMessageStore(), StubBackend())
        self.alerts = []

    def _client(self, transport=None):
        client = ChatClient(
            base_url="http://testserver",
            transport=transport or fake_backend_transport(self.service),
            alert=self.alerts.append,
        )
        self.addCleanup(client.close)
        return client

    def test_load_history(self):
        self.service.submit("earlier")
        client = self._client()
        client.load_history()
        self.assertEqual([m["content"] for m in client.messages], ["earlier", "Hi there!"])

    def test_load_history_failure_keeps_empty_list(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        client = self._client(httpx.MockTransport(handler))
        with self.assertLogs("parley", level="ERROR"):
            client.load_history()
        self.assertEqual(client.messages, [])
        self.assertEqual(self.alerts, [])

    def test_send_replaces_list_and_clears_input(self):
        client = self._client()
        client.input = "hello"
        self.assertTrue(client.send())
        self.assertEqual([m["role"] for m in client.messages], ["user", "assistant"])
        self.assertEqual(client.input, "")
        self.assertFalse(client.loading)

    def test_send_is_guarded(self):
        client = self._client()
        client.input = "   "
        self.assertFalse(client.can_send)
        self.assertFalse(client.send())
        client.input = "hello"
        client.loading = True
        self.assertFalse(client.can_send)
        self.assertFalse(client.send())
        self.assertEqual(self.service.list_messages(), [])

    def test_send_failure_alerts_and_keeps_input(self):
        client = self._client(fake_backend_transport(self.service, fail_posts=True))
        client.input = "hello"
        with self.assertLogs("parley", level="ERROR"):
            self.assertFalse(client.send())
        self.assertEqual(len(self.alerts), 1)
        self.assertEqual(client.input, "hello")
        self.assertEqual(client.messages, [])
        self.assertFalse(client.loading)

    def test_enter_sends_and_shift_enter_adds_newline(self):
        client = self._client()
        client.input = "line one"
        self.assertTrue(client.handle_key("Enter", shift=True))
        self.assertEqual(client.input, "line one\n")
        client.input += "line two"
        self.assertTrue(client.handle_key("Enter"))
        self.assertEqual(client.messages[0]["content"], "line one\nline two")
        self.assertFalse(client.handle_key("a"))

    def test_stats_and_timeline(self):
        self.service.submit("x" * 80)
        self.service.submit("short")
        self.service.submit("last")
        client = self._client()
        client.load_history()

        self.assertEqual(client.stats(), SessionStats(total=6, user_turns=3, assistant_replies=3))
        timeline = client.timeline()
        self.assertEqual(len(timeline), 4)
        self.assertEqual([e.label for e in timeline], ["AI", "You", "AI", "You"])
        self.assertEqual(timeline[1].preview, "last")
        self.assertEqual(timeline[0].id, client.messages[-1]["id"])

        client.messages = client.messages[:2]
        self.assertEqual(client.timeline()[1].preview, "x" * 60 + "…")

    def test_empty_client_state(self):
        client = self._client()
        self.assertEqual(client.stats(), SessionStats(0, 0, 0))
        self.assertEqual(client.timeline(), [])


class CommandTests(SimpleTestCase):
    @override_settings(PORT=6123)
    def test_runserver_default_port_comes_from_settings(self):
        self.assertEqual(RunserverCommand().default_port, "6123")

    def test_chat_command_round_trip(self):
        service = ChatService(InMemoryMessageStore(), StubBackend(reply="Hey!"))
        transport = fake_backend_transport(service)

        def make_client(base_url, alert):
            return ChatClient(base_url=base_url, transport=transport, alert=alert)

        out = io.StringIO()
        stdin = io.StringIO("first line\\\nsecond line\n/stats\n/quit\nignored\n")
        with patch("chat.management.commands.chat.ChatClient", side_effect=make_client):
            call_command("chat", url="http://testserver", stdin=stdin, stdout=out)

        output = out.getvalue()
        self.assertIn("[AI] Hey!", output)
        self.assertIn("Total messages: 2 | User turns: 1 | AI replies: 1", output)
        self.assertEqual(service.list_messages()[0].content, "first line\nsecond line")
        self.assertEqual(len(service.list_messages()), 2)

    def _run_chat(self, service, lines, failed_posts=0):
        transport = fake_backend_transport(service, failed_posts=failed_posts)

        def make_client(base_url, alert):
            return ChatClient(base_url=base_url, transport=transport, alert=alert)

        out, err = io.StringIO(), io.StringIO()
        with patch("chat.management.commands.chat.ChatClient", side_effect=make_client):
            call_command("chat", url="http://testserver", stdin=io.StringIO(lines), stdout=out, stderr=err)
        return out.getvalue(), err.getvalue()

    def test_line_after_failed_send_starts_a_new_line(self):
        service = ChatService(InMemoryMessageStore(), StubBackend(reply="Hey!"))
        with self.assertLogs("parley", level="ERROR"):
            _, err = self._run_chat(service, "hello\nworld\n/quit\n", failed_posts=1)

        self.assertIn("Error sending message", err)
        self.assertEqual([m.content for m in service.list_messages()], ["hello\nworld", "Hey!"])

    def test_empty_line_retries_failed_send(self):
        service = ChatService(InMemoryMessageStore(), StubBackend(reply="Hey!"))
        with self.assertLogs("parley", level="ERROR"):
            self._run_chat(service, "hello\n\n/quit\n", failed_posts=1)

        self.assertEqual([m.content for m in service.list_messages()], ["hello", "Hey!"])

    def test_quit_works_while_a_failed_send_is_pending(self):
        service = ChatService(InMemoryMessageStore(), StubBackend(reply="Hey!"))
        with self.assertLogs("parley", level="ERROR"):
            self._run_chat(service, "hello\n/quit\nnever sent\n", failed_posts=5)

        self.assertEqual(service.list_messages(), [])


@override_settings(CORS_ALLOW_ALL_ORIGINS=False, CORS_ALLOWED_ORIGINS=["http://localhost:3000"])
class CorsTests(SimpleTestCase):
    def setUp(self):
        service = ChatService(InMemoryMessageStore(), StubBackend())
        patcher = patch("chat.views.get_chat_service", return_value=service)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.url = reverse("messages")

    def test_allowed_origin_is_echoed(self):
        resp = self.client.get(self.url, HTTP_ORIGIN="http://localhost:3000")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp["Access-Control-Allow-Origin"], "http://localhost:3000")

    def test_other_origin_gets_no_header(self):
        resp = self.client.get(self.url, HTTP_ORIGIN="http://evil.example")
        self.assertNotIn("Access-Control-Allow-Origin", resp)

    def test_preflight_for_submission(self):
        resp = self.client.options(
            self.url,
            HTTP_ORIGIN="http://localhost:3000",
            HTTP_ACCESS_CONTROL_REQUEST_METHOD="POST",
            HTTP_ACCESS_CONTROL_REQUEST_HEADERS="content-type",
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp["Access-Control-Allow-Origin"], "http://localhost:3000")
        self.assertIn("POST", resp["Access-Control-Allow-Methods"])

    @override_settings(CORS_ALLOW_ALL_ORIGINS=True)
    def test_allow_all_origins(self):
        resp = self.client.get(self.url, HTTP_ORIGIN="http://anywhere.example")
        self.assertEqual(resp["Access-Control-Allow-Origin"], "*")
