import logging

from django.conf import settings
from django.core.management.commands.runserver import Command as RunserverCommand

log = logging.getLogger("parley")


class Command(RunserverCommand):
    help = "Starts the chat backend. The default port comes from the PORT environment variable."

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.default_port = str(settings.PORT)

    def inner_run(self, *args, **options):
        log.info("Chat backend with AI + fallback running on %s:%s", self.addr, self.port)
        super().inner_run(*args, **options)
