import pytest

from mail_dispatch.errors import TemplateRenderError
from mail_dispatch.rendering import Jinja2Renderer, RecipientPrefs, generate_email

TEMPLATES = {
    "header": "bugmail.header.tmpl",
    "text": "bugmail.txt.tmpl",
    "html": "bugmail.html.tmpl",
}


@pytest.fixture
def template_dir(tmp_path):
    root = tmp_path / "templates"
    (root / "de").mkdir(parents=True)
    (root / "bugmail.header.tmpl").write_text(
        "From: bugzilla-daemon\nTo: {{ to }}\nSubject: [Bug {{ bug_id }}] {{ summary }}\n"
    )
    (root / "bugmail.txt.tmpl").write_text("Bug {{ bug_id }} changed: {{ summary }}\n")
    (root / "bugmail.html.tmpl").write_text("<p>Bug {{ bug_id }}: {{ summary }}</p>\n")
    (root / "de" / "bugmail.txt.tmpl").write_text("Fehler {{ bug_id }} geändert\n", encoding="utf-8")
    (root / "broken.tmpl").write_text("{{ missing_variable }}\n")
    return root


CONTEXT = {"to": "user@example.com", "bug_id": 42, "summary": "Crash <on> save"}


def test_html_recipient_gets_multipart(template_dir):
    renderer = Jinja2Renderer([template_dir])
    msg = generate_email(CONTEXT, TEMPLATES, renderer, RecipientPrefs(email_format="html"))

    assert msg.get_content_type() == "multipart/alternative"
    assert msg["Subject"] == "[Bug 42] Crash <on> save"
    text, html = [part.get_content() for part in msg.iter_parts()]
    assert text == "Bug 42 changed: Crash <on> save\n"
    assert html == "<p>Bug 42: Crash &lt;on&gt; save</p>\n"


def test_text_only_recipient_gets_single_part(template_dir):
    renderer = Jinja2Renderer([template_dir])
    msg = generate_email(CONTEXT, TEMPLATES, renderer, RecipientPrefs(email_format="text_only"))
    assert not msg.is_multipart()
    assert msg.get_content_type() == "text/plain"


def test_no_recipient_falls_back_to_text_in_default_language(template_dir):
    renderer = Jinja2Renderer([template_dir], default_lang="de")
    msg = generate_email(CONTEXT, TEMPLATES, renderer)
    assert not msg.is_multipart()
    assert msg.get_content() == "Fehler 42 geändert\n"


def test_language_specific_template_wins(template_dir):
    renderer = Jinja2Renderer([template_dir])
    german = generate_email(CONTEXT, TEMPLATES, renderer, RecipientPrefs(lang="de", email_format="text_only"))
    english = generate_email(CONTEXT, TEMPLATES, renderer, RecipientPrefs(lang="en", email_format="text_only"))
    assert german.get_content() == "Fehler 42 geändert\n"
    assert english.get_content() == "Bug 42 changed: Crash <on> save\n"


def test_render_errors_are_template_errors(template_dir):
    renderer = Jinja2Renderer([template_dir])
    with pytest.raises(TemplateRenderError) as excinfo:
        renderer.render("broken.tmpl", {}, "en")
    assert excinfo.value.template == "broken.tmpl"
    assert excinfo.value.code == "template_error"

    with pytest.raises(TemplateRenderError):
        renderer.render("does-not-exist.tmpl", {}, "en")
