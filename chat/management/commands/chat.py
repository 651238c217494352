import sys

from django.conf import settings
from django.core.management.base import BaseCommand

from chat.client import ChatClient, role_label


class Command(BaseCommand):
    help = (
        "Interactive terminal chat against a running backend. End a line with "
        "a backslash to continue on a new line, /stats for the session "
        "overview, /quit to leave."
    )
    stealth_options = ("stdin",)

    def add_arguments(self, parser):
        parser.add_argument("--url", default=None, help="Backend base URL (default: http://localhost:PORT)")

    def handle(self, *args, **options):
        url = options["url"] or f"http://localhost:{settings.PORT}"
        stdin = options.get("stdin") or sys.stdin

        with ChatClient(base_url=url, alert=self._alert) as client:
            client.load_history()
            if not client.messages:
                self.stdout.write("Start the conversation… Type a message and press Enter.")
            for m in client.messages:
                self._print_message(m)

            retry_pending = False
            for raw in stdin:
                line = raw.rstrip("\n")
                at_prompt = not client.input or retry_pending
                if at_prompt and line.strip() == "/quit":
                    break
                if at_prompt and line.strip() == "/stats":
                    self._print_stats(client)
                    continue
                if retry_pending and line:
                    client.input += "\n"
                    retry_pending = False
                if line.endswith("\\"):
                    client.input += line[:-1]
                    client.handle_key("Enter", shift=True)
                    continue

                client.input += line
                if not client.can_send:
                    continue
                seen = len(client.messages)
                self.stdout.write("AI is typing…")
                client.handle_key("Enter")
                retry_pending = bool(client.input)
                if len(client.messages) > seen:
                    for m in client.messages[seen:]:
                        if m["role"] != "user":
                            self._print_message(m)

    def _alert(self, text):
        self.stderr.write(f"{text} Press Enter on an empty line to retry, or keep typing to add lines to it.")

    def _print_message(self, m):
        self.stdout.write(f"[{role_label(m['role'])}] {m['content']}")

    def _print_stats(self, client):
        stats = client.stats()
        self.stdout.write(
            f"Total messages: {stats.total} | User turns: {stats.user_turns} | "
            f"AI replies: {stats.assistant_replies}"
        )
        entries = client.timeline()
        if not entries:
            self.stdout.write("Start chatting to see the live timeline here.")
        for entry in entries:
            self.stdout.write(f"  {entry.label}: {entry.preview}")
