"""Email template registry and Jinja2 rendering."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateError

from app.core.config import settings
from app.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

# Jinja2 template environment
TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)
# Subjects are plain text; the HTML body escapes them where it embeds them
_subject_env = Environment(autoescape=False)

_SAMPLE_VARIABLES: dict[str, Any] = {"first_name": "Alex"}


@dataclass(frozen=True)
class EmailTemplate:
    """A renderable email: subject line (itself a Jinja string) plus an HTML file."""

    template_id: str
    subject: str
    file: str
    sample_variables: dict[str, Any] = field(default_factory=lambda: dict(_SAMPLE_VARIABLES))


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str


def _template(template_id: str, subject: str) -> EmailTemplate:
    return EmailTemplate(template_id=template_id, subject=subject, file=f"{template_id}.html")


TEMPLATES: dict[str, EmailTemplate] = {
    t.template_id: t
    for t in (
        # Trial sequence
        _template("trial_welcome", "Welcome to your free trial, {{ first_name }}"),
        _template("trial_day1_lessons", "Lesson one: where a great job search starts"),
        _template("trial_day2_contacts", "Your network is bigger than you think"),
        _template("trial_day3_resume", "Make your resume work harder"),
        _template("trial_day4_portfolio", "Show, don't tell: build your portfolio"),
        _template("trial_day5_jobs", "Jobs picked for you, {{ first_name }}"),
        _template("trial_day6_ends_soon", "Your trial ends tomorrow"),
        _template("trial_day7_ended", "Your trial has ended"),
        _template("trial_day10_still_interested", "Still looking, {{ first_name }}?"),
        _template("trial_day14_need_help", "Can we help with anything?"),
        _template("trial_day21_discount", "A discount to get you back on track"),
        _template("trial_day28_discount_reminder", "Last chance: your discount expires soon"),
        # Onboarding abandoned
        _template("onboarding_abandoned_15min", "You're almost set up, {{ first_name }}"),
        _template("onboarding_abandoned_1day", "Pick up where you left off"),
        _template("onboarding_abandoned_7day", "Your profile is waiting for you"),
    )
}


class TemplateRenderer:
    """Renders registered templates with per-recipient variables."""

    def __init__(
        self,
        templates: Mapping[str, EmailTemplate] | None = None,
        env: Environment | None = None,
    ) -> None:
        self.templates = dict(TEMPLATES if templates is None else templates)
        self.env = env or _jinja_env

    def get(self, template_id: str) -> EmailTemplate:
        template = self.templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Unknown template: {template_id}")
        return template

    def all(self) -> list[EmailTemplate]:
        return list(self.templates.values())

    def render(
        self,
        template_id: str,
        variables: Mapping[str, Any] | None = None,
        unsubscribe_url: str | None = None,
    ) -> RenderedEmail:
        """Render subject and HTML body.

        ``first_name`` falls back to "there" and ``app_url`` to the configured
        web app URL; the caller's variables win over both.
        """
        template = self.get(template_id)
        context: dict[str, Any] = {
            "first_name": "there",
            "app_url": settings.app_url,
            **(variables or {}),
            "unsubscribe_url": unsubscribe_url,
        }
        try:
            subject = _subject_env.from_string(template.subject).render(**context)
            html = self.env.get_template(template.file).render(subject=subject, **context)
        except TemplateError:
            logger.exception("Failed to render template %s", template_id)
            raise

        return RenderedEmail(subject=subject, html=html)

    def preview(self, template_id: str) -> RenderedEmail:
        """Render with the template's sample variables and a placeholder unsubscribe link."""
        template = self.get(template_id)
        return self.render(
            template_id,
            template.sample_variables,
            unsubscribe_url=f"{settings.app_url}/unsubscribe/preview",
        )


_default_renderer = TemplateRenderer()


def get_template_renderer() -> TemplateRenderer:
    """FastAPI dependency returning the shared renderer."""
    return _default_renderer
