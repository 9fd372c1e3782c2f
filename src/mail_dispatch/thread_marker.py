# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Threading headers that group notifications about one entity.

The first notification about an entity gets a deterministic Message-ID
derived from the site, the entity and the acting user, so it can be
regenerated idempotently. Every follow-up gets a unique Message-ID plus
In-Reply-To/References pointing at that deterministic root, which makes mail
clients show the whole history as one conversation.

Example:
    >>> builder = ThreadMarkerBuilder("http://example.com:8080/")
    >>> builder.build(42, 7, is_new=True)
    'Message-ID: <bug-42-7-8080@example.com>'
"""

from __future__ import annotations

import secrets
import string
from urllib.parse import urlsplit

DEFAULT_PREFIX = "bug"
TOKEN_LENGTH = 10
TOKEN_ALPHABET = string.ascii_letters + string.digits
DEFAULT_PORTS = {"http": 80, "https": 443}


def random_token(length: int = TOKEN_LENGTH) -> str:
    """Return ``length`` characters drawn from :mod:`secrets`."""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def sitespec(url_base: str) -> str:
    """Turn the site base URL into the right-hand side of a Message-ID.

    The scheme is dropped, path segments are appended to the host with dots,
    and a non-default port moves in front of the ``@``::

        http://example.com          -> @example.com
        http://example.com:8080/    -> -8080@example.com
        https://example.com/bz/     -> @example.com.bz
    """
    parts = urlsplit(url_base)
    if not parts.netloc:
        parts = urlsplit("//" + url_base)
    host = parts.hostname or "localhost"
    segments = [seg for seg in parts.path.split("/") if seg]
    spec = "@" + ".".join([host, *segments])

    port = parts.port
    if port and port != DEFAULT_PORTS.get(parts.scheme):
        spec = f"-{port}{spec}"
    return spec


def site_hostname(url_base: str) -> str:
    """Host part of the site base URL, ``localhost`` when there is none."""
    parts = urlsplit(url_base)
    if not parts.netloc:
        parts = urlsplit("//" + url_base)
    return parts.hostname or "localhost"


class ThreadMarkerBuilder:
    """Builds Message-ID / In-Reply-To / References header blocks.

    Attributes:
        url_base: Site base URL used for the sitespec.
        prefix: Leading token of every generated id (``bug`` by default).
        default_actor_id: Actor used when ``build`` gets no actor.
    """

    def __init__(self, url_base: str, *, prefix: str = DEFAULT_PREFIX, default_actor_id: int | str | None = None):
        self.url_base = url_base
        self.prefix = prefix
        self.default_actor_id = default_actor_id
        self._sitespec = sitespec(url_base)

    def root_id(self, entity_id: int | str, actor_id: int | str) -> str:
        """Deterministic Message-ID of the first message in the thread."""
        return f"<{self.prefix}-{entity_id}-{actor_id}{self._sitespec}>"

    def build(self, entity_id: int | str, actor_id: int | str | None = None, is_new: bool = False) -> str:
        """Return the header lines marking a notification's thread.

        Args:
            entity_id: Identifier of the entity the notification is about.
            actor_id: User who triggered the change; falls back to
                ``default_actor_id``.
            is_new: True for the first notification of the thread.

        Returns:
            One ``Message-ID`` line when ``is_new``, otherwise three lines:
            a unique ``Message-ID``, ``In-Reply-To`` and ``References``.
        """
        if actor_id is None:
            actor_id = self.default_actor_id
        if actor_id is None:
            raise ValueError("actor_id is required when no default actor is configured")

        root = self.root_id(entity_id, actor_id)
        if is_new:
            return f"Message-ID: {root}"

        unique = f"<{self.prefix}-{entity_id}-{actor_id}-{random_token()}{self._sitespec}>"
        return f"Message-ID: {unique}\nIn-Reply-To: {root}\nReferences: {root}"


def build_thread_marker(url_base: str, entity_id: int | str, actor_id: int | str, is_new: bool = False) -> str:
    """Convenience wrapper around :class:`ThreadMarkerBuilder`."""
    return ThreadMarkerBuilder(url_base).build(entity_id, actor_id, is_new)
