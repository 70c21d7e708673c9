"""Template rendering contract and administration rules."""

import pytest

from conftest import APPOINTMENT_VARIABLES, TENANT

from notifyhub.common.errors import MissingVariableError, TemplateNotFoundError, ValidationError
from notifyhub.services.templates.defaults import default_templates
from notifyhub.services.templates.engine import placeholders, substitute
from notifyhub.services.templates.schemas import TemplateCreateRequest, TemplateUpdateRequest
from notifyhub.services.templates.service import TemplateService, validate_template_fields


def test_placeholders_tolerate_whitespace():
    assert placeholders("Hi {{ name }} at {{time}}") == {"name", "time"}


def test_substitution_is_single_literal_pass():
    rendered = substitute("Hello {{name}}", {"name": "{{secret}}", "secret": "leak"})
    assert rendered == "Hello {{secret}}"


def test_render_confirmation(seeded_templates, template_engine):
    message = template_engine.render(TENANT, "whatsapp", "confirmation", APPOINTMENT_VARIABLES)

    assert "Ana Souza" in message.body
    assert "{{" not in message.body
    assert message.subject is None


def test_render_email_has_subject(seeded_templates, template_engine):
    message = template_engine.render(TENANT, "email", "reminder", APPOINTMENT_VARIABLES)

    assert message.subject == "Reminder: your appointment - Studio Bela"
    assert "14:30" in message.body


def test_missing_required_variable_fails_closed(seeded_templates, template_engine):
    variables = dict(APPOINTMENT_VARIABLES)
    del variables["service_name"]
    del variables["appointment_date"]

    with pytest.raises(MissingVariableError) as excinfo:
        template_engine.render(TENANT, "sms", "confirmation", variables)

    assert excinfo.value.variable == "appointment_date"
    assert excinfo.value.missing == ["appointment_date", "service_name"]


def test_optional_placeholder_renders_empty(seeded_templates, template_engine):
    variables = dict(APPOINTMENT_VARIABLES)
    del variables["company_phone"]

    message = template_engine.render(TENANT, "sms", "cancellation", variables)

    assert "call ." in message.body


def test_no_fallback_for_unknown_tenant(seeded_templates, template_engine):
    with pytest.raises(TemplateNotFoundError):
        template_engine.render("tenant-without-templates", "sms", "confirmation", APPOINTMENT_VARIABLES)


def test_inactive_template_is_not_resolved(session_factory, seeded_templates, template_engine):
    service = TemplateService(session_factory)
    template = next(t for t in service.list_templates(TENANT, channel="sms") if t.name == "reminder")
    service.update(TENANT, template.id, TemplateUpdateRequest(active=False))

    with pytest.raises(TemplateNotFoundError):
        template_engine.render(TENANT, "sms", "reminder", APPOINTMENT_VARIABLES)


def test_create_rejects_duplicate_name_and_channel(session_factory):
    service = TemplateService(session_factory)
    req = TemplateCreateRequest(
        name="promo",
        channel="sms",
        notification_type="custom",
        body_template="Hi {{customer_name}}",
        required_variables=["customer_name"],
    )
    service.create(TENANT, req)

    with pytest.raises(ValidationError):
        service.create(TENANT, req)
    # Same name on another channel or tenant is fine.
    service.create(TENANT, req.model_copy(update={"channel": "whatsapp"}))
    service.create("tenant-b", req)


def test_required_variables_must_appear_in_template(session_factory):
    service = TemplateService(session_factory)
    with pytest.raises(ValidationError):
        service.create(
            TENANT,
            TemplateCreateRequest(
                name="promo",
                channel="sms",
                notification_type="custom",
                body_template="Hi there",
                required_variables=["customer_name"],
            ),
        )


def test_email_requires_subject(session_factory):
    service = TemplateService(session_factory)
    with pytest.raises(ValidationError):
        service.create(
            TENANT,
            TemplateCreateRequest(name="promo", channel="email", notification_type="custom", body_template="Hi"),
        )


def test_seed_defaults_is_repeatable(session_factory):
    service = TemplateService(session_factory)
    first = service.seed_defaults(TENANT)
    second = service.seed_defaults(TENANT)

    assert len(first) == 14
    assert second == []
    assert {t.channel for t in first if t.name == "help_menu"} == {"whatsapp", "sms"}


def test_delete_is_tenant_scoped(session_factory, seeded_templates):
    service = TemplateService(session_factory)
    template = seeded_templates[0]

    assert service.delete("tenant-b", template.id) is False
    assert service.delete(TENANT, template.id) is True
    assert service.get(TENANT, template.id) is None


def test_built_in_defaults_satisfy_their_own_contract():
    for definition in default_templates():
        validate_template_fields(
            definition["channel"],
            definition["notification_type"],
            definition["body_template"],
            definition["subject_template"],
            definition["required_variables"],
        )


def test_list_templates_is_tenant_and_channel_scoped(session_factory, seeded_templates):
    service = TemplateService(session_factory)

    sms = service.list_templates(TENANT, channel="sms")

    assert sms
    assert {t.channel for t in sms} == {"sms"}
    assert len(service.list_templates(TENANT)) == len(seeded_templates)
    assert service.list_templates("tenant-b") == []
