"""Filename templates: {date}, {time}, {uuid}, {counter} and {random:N}."""

import itertools
import random
import re
import string
import threading
import uuid
from datetime import datetime

from .errors import ConfigError

RANDOM_CHARSET = string.ascii_letters + string.digits
MAX_RANDOM_LENGTH = 32

_counter = itertools.count(1)
_counter_lock = threading.Lock()

_RANDOM_RE = re.compile(r"\{random:([^}]*)\}")


def next_counter() -> int:
    """Process-wide upload counter, starting at 1."""
    with _counter_lock:
        return next(_counter)


def reset_counter():
    """Restart the counter at 1. Only meant for tests."""
    global _counter
    with _counter_lock:
        _counter = itertools.count(1)


def random_string(length: int) -> str:
    return "".join(random.choice(RANDOM_CHARSET) for _ in range(length))


class TemplateParser:
    """Expands a filename template into a concrete filename."""

    def __init__(self, date_format: str = "%Y%m%d", time_format: str = "%H%M%S"):
        self.date_format = date_format
        self.time_format = time_format

    def _expand_random(self, match) -> str:
        raw = match.group(1)
        try:
            length = int(raw)
        except ValueError:
            length = 0
        if not 1 <= length <= MAX_RANDOM_LENGTH:
            raise ConfigError(
                f"Invalid random length in template: {raw}. Must be between 1 and {MAX_RANDOM_LENGTH}"
            )
        return random_string(length)

    def generate(self, template: str, extension: str) -> str:
        result = template
        now = datetime.now()

        if "{date}" in result:
            result = result.replace("{date}", now.strftime(self.date_format))
        if "{time}" in result:
            result = result.replace("{time}", now.strftime(self.time_format))
        if "{uuid}" in result:
            result = result.replace("{uuid}", str(uuid.uuid4()))
        if "{counter}" in result:
            result = result.replace("{counter}", str(next_counter()))

        result = _RANDOM_RE.sub(self._expand_random, result)
        if "{random:" in result:
            raise ConfigError("Malformed {random:N} placeholder")

        extension = extension.lstrip(".")
        if not extension:
            return result
        return f"{result}.{extension}"


def generate_filename(template: str, extension: str) -> str:
    return TemplateParser().generate(template, extension)
