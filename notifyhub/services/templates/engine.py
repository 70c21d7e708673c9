"""Template rendering with required-variable contract checks.

Rendering is a pure function over the template store and the supplied
variables: one literal substitution pass, no expression evaluation, and no
fallback to built-in text when a tenant has no usable template.
"""

import re

from pydantic import BaseModel
from sqlalchemy import select

from notifyhub.common.errors import AmbiguousTemplateError, MissingVariableError, TemplateNotFoundError
from notifyhub.services.templates.models import MessageTemplate


PLACEHOLDER_RE = re.compile(r"{{\s*([A-Za-z0-9_.]+)\s*}}")


class RenderedMessage(BaseModel):
    """Channel-ready message produced by the engine."""

    channel: str
    template_name: str
    body: str
    subject: str | None = None


def placeholders(text: str | None) -> set[str]:
    """Names of every `{{ name }}` placeholder in `text`."""

    if not text:
        return set()
    return set(PLACEHOLDER_RE.findall(text))


def substitute(text: str, variables: dict[str, str]) -> str:
    # re.sub never rescans replaced text, so values containing `{{x}}` stay literal.
    return PLACEHOLDER_RE.sub(lambda match: str(variables.get(match.group(1), "")), text)


class TemplateStore:
    """Read-only lookup of tenant templates."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def active_defaults(self, tenant_id: str, channel: str, template_name: str) -> list[MessageTemplate]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(MessageTemplate).where(
                        MessageTemplate.tenant_id == tenant_id,
                        MessageTemplate.channel == channel,
                        MessageTemplate.name == template_name,
                        MessageTemplate.active.is_(True),
                        MessageTemplate.is_default.is_(True),
                    )
                )
                .scalars()
                .all()
            )


class TemplateEngine:
    def __init__(self, store: TemplateStore) -> None:
        self.store = store

    def resolve(self, tenant_id: str, channel: str, template_name: str) -> MessageTemplate:
        """Return the single active default template or raise a configuration error."""

        candidates = self.store.active_defaults(tenant_id, channel, template_name)
        if not candidates:
            raise TemplateNotFoundError(tenant_id, channel, template_name)
        if len(candidates) > 1:
            raise AmbiguousTemplateError(tenant_id, channel, template_name, len(candidates))
        return candidates[0]

    def render(self, tenant_id: str, channel: str, template_name: str, variables: dict[str, str]) -> RenderedMessage:
        template = self.resolve(tenant_id, channel, template_name)
        missing = [name for name in template.required_variables or [] if variables.get(name) is None]
        if missing:
            raise MissingVariableError(missing)

        subject = None
        if channel == "email" and template.subject_template:
            subject = substitute(template.subject_template, variables).strip()
        return RenderedMessage(
            channel=channel,
            template_name=template_name,
            body=substitute(template.body_template, variables).strip(),
            subject=subject,
        )
