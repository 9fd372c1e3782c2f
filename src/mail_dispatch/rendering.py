# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Rendering of notification messages from templates.

The dispatcher only consumes finished messages; this module is the
collaborator that produces them. A renderer turns a template name, a
context and a language into text, and :func:`generate_email` assembles the
header block plus the plain-text and (optionally) HTML renderings into one
message.

Example:
    >>> renderer = Jinja2Renderer(["templates"])
    >>> msg = generate_email(
    ...     {"bug": bug, "to_user": user},
    ...     {"header": "newchangedmail.txt.tmpl.header",
    ...      "text": "newchangedmail.txt.tmpl",
    ...      "html": "newchangedmail.html.tmpl"},
    ...     renderer,
    ...     recipient=RecipientPrefs(lang="de", email_format="html"),
    ... )
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape

from .errors import TemplateRenderError
from .message import compose_message

EMAIL_FORMAT_HTML = "html"
EMAIL_FORMAT_TEXT = "text_only"


@dataclass(frozen=True)
class RecipientPrefs:
    """Per-recipient rendering preferences."""

    lang: str | None = None
    email_format: str = EMAIL_FORMAT_HTML


class MessageRenderer(Protocol):
    default_lang: str

    def render(self, template: str, context: Mapping[str, Any], lang: str) -> str:
        """Render ``template`` or raise :class:`TemplateRenderError`."""
        ...


class Jinja2Renderer:
    """Jinja2-backed renderer with per-language template directories.

    Templates are looked up in ``<dir>/<lang>/`` first and then in
    ``<dir>/`` for every configured directory.
    """

    def __init__(self, template_dirs: Sequence[str | Path], default_lang: str = "en"):
        self.template_dirs = [Path(d) for d in template_dirs]
        self.default_lang = default_lang
        self._environments: dict[str, Environment] = {}

    def environment(self, lang: str) -> Environment:
        env = self._environments.get(lang)
        if env is None:
            search = [str(d / lang) for d in self.template_dirs] + [str(d) for d in self.template_dirs]
            env = Environment(
                loader=FileSystemLoader(search),
                autoescape=select_autoescape(["html", "html.tmpl"]),
                undefined=StrictUndefined,
                keep_trailing_newline=True,
            )
            self._environments[lang] = env
        return env

    def render(self, template: str, context: Mapping[str, Any], lang: str) -> str:
        try:
            return self.environment(lang).get_template(template).render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(template, exc) from exc


def generate_email(
    context: Mapping[str, Any],
    templates: Mapping[str, str],
    renderer: MessageRenderer,
    recipient: RecipientPrefs | None = None,
) -> EmailMessage:
    """Render a notification into a finished message.

    Without recipient preferences (for example an address with no account)
    the default language is used and the format falls back to plain text,
    since HTML templates may rely on recipient data.

    Args:
        context: Template variables.
        templates: ``header`` and ``text`` template names, optional ``html``.
        renderer: The renderer to use.
        recipient: Language and email format of the recipient.

    Raises:
        TemplateRenderError: Propagated unchanged from the renderer.
    """
    if recipient is not None:
        lang = recipient.lang or renderer.default_lang
        email_format = recipient.email_format
    else:
        lang = renderer.default_lang
        email_format = EMAIL_FORMAT_TEXT

    header = renderer.render(templates["header"], context, lang)
    text = renderer.render(templates["text"], context, lang)
    html = None
    if templates.get("html") and email_format == EMAIL_FORMAT_HTML:
        html = renderer.render(templates["html"], context, lang)
    return compose_message(header, text, html)
