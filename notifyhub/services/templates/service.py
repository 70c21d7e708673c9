"""Tenant-scoped template administration.

Templates are unique per `(tenant_id, name, channel)`. Every write is checked
against the placeholder contract so a stored template can always satisfy the
variables it declares as required.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from notifyhub.common.errors import ValidationError
from notifyhub.common.logging import logger
from notifyhub.common.state_machine import CHANNELS, NOTIFICATION_TYPES
from notifyhub.services.templates.defaults import default_templates
from notifyhub.services.templates.engine import placeholders
from notifyhub.services.templates.models import MessageTemplate
from notifyhub.services.templates.schemas import TemplateCreateRequest, TemplateUpdateRequest


def validate_template_fields(
    channel: str,
    notification_type: str,
    body_template: str,
    subject_template: str | None,
    required_variables: list[str],
) -> None:
    """Raise `ValidationError` when a template definition is inconsistent."""

    if channel not in CHANNELS:
        raise ValidationError(f"unknown channel: {channel}")
    if notification_type not in NOTIFICATION_TYPES:
        raise ValidationError(f"unknown notification_type: {notification_type}")
    if channel == "email" and not subject_template:
        raise ValidationError("email templates require subject_template")
    if channel != "email" and subject_template:
        raise ValidationError(f"{channel} templates must not carry subject_template")

    declared = placeholders(body_template) | placeholders(subject_template)
    undeclared = sorted(set(required_variables) - declared)
    if undeclared:
        raise ValidationError(f"required variables not used by the template: {', '.join(undeclared)}")


class TemplateService:
    """CRUD over `MessageTemplate` plus explicit default provisioning."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create(self, tenant_id: str, req: TemplateCreateRequest) -> MessageTemplate:
        validate_template_fields(
            req.channel, req.notification_type, req.body_template, req.subject_template, req.required_variables
        )
        with self.session_factory() as db:
            existing = db.execute(
                select(MessageTemplate).where(
                    MessageTemplate.tenant_id == tenant_id,
                    MessageTemplate.name == req.name,
                    MessageTemplate.channel == req.channel,
                )
            ).scalar_one_or_none()
            if existing:
                raise ValidationError(f"template already exists name={req.name} channel={req.channel}")

            template = MessageTemplate(tenant_id=tenant_id, **req.model_dump())
            db.add(template)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ValidationError(f"template already exists name={req.name} channel={req.channel}") from exc
            logger.info(
                "template_created tenant_id=%s name=%s channel=%s template_id=%s",
                tenant_id,
                template.name,
                template.channel,
                template.id,
            )
            return template

    def get(self, tenant_id: str, template_id: str) -> MessageTemplate | None:
        with self.session_factory() as db:
            template = db.get(MessageTemplate, template_id)
            if template is None or template.tenant_id != tenant_id:
                return None
            return template

    def list_templates(self, tenant_id: str, channel: str | None = None) -> list[MessageTemplate]:
        with self.session_factory() as db:
            query = select(MessageTemplate).where(MessageTemplate.tenant_id == tenant_id)
            if channel:
                query = query.where(MessageTemplate.channel == channel)
            query = query.order_by(MessageTemplate.channel, MessageTemplate.name)
            return list(db.execute(query).scalars().all())

    def update(self, tenant_id: str, template_id: str, req: TemplateUpdateRequest) -> MessageTemplate | None:
        with self.session_factory() as db:
            template = db.get(MessageTemplate, template_id)
            if template is None or template.tenant_id != tenant_id:
                return None

            changes = req.model_dump(exclude_unset=True)
            merged = {
                "body_template": changes.get("body_template") or template.body_template,
                "subject_template": changes.get("subject_template", template.subject_template),
                "required_variables": changes.get("required_variables")
                if changes.get("required_variables") is not None
                else list(template.required_variables or []),
            }
            validate_template_fields(
                template.channel,
                template.notification_type,
                merged["body_template"],
                merged["subject_template"],
                merged["required_variables"],
            )
            for field, value in changes.items():
                if value is None and field != "subject_template":
                    continue
                setattr(template, field, value)
            db.commit()
            logger.info("template_updated tenant_id=%s template_id=%s fields=%s", tenant_id, template_id, sorted(changes))
            return template

    def delete(self, tenant_id: str, template_id: str) -> bool:
        with self.session_factory() as db:
            template = db.get(MessageTemplate, template_id)
            if template is None or template.tenant_id != tenant_id:
                return False
            db.delete(template)
            db.commit()
            logger.info("template_deleted tenant_id=%s template_id=%s", tenant_id, template_id)
            return True

    def seed_defaults(self, tenant_id: str) -> list[MessageTemplate]:
        """Provision built-in templates the tenant does not have yet.

        Existing `(name, channel)` pairs are left untouched, so tenant
        customizations survive a repeated seed.
        """

        created = []
        with self.session_factory() as db:
            existing = {
                (row.name, row.channel)
                for row in db.execute(
                    select(MessageTemplate).where(MessageTemplate.tenant_id == tenant_id)
                ).scalars()
            }
            for definition in default_templates():
                if (definition["name"], definition["channel"]) in existing:
                    continue
                template = MessageTemplate(tenant_id=tenant_id, active=True, is_default=True, **definition)
                db.add(template)
                created.append(template)
            db.commit()
        logger.info("templates_seeded tenant_id=%s created=%s", tenant_id, len(created))
        return created
