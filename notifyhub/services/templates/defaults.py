"""Built-in templates provisioned by `TemplateService.seed_defaults`."""

APPOINTMENT_VARIABLES = ["customer_name", "appointment_date", "appointment_time", "service_name", "company_name"]

CONVERSATIONAL_BODIES = {
    "confirmation": (
        "*Appointment confirmed*\n\n"
        "Hello *{{customer_name}}*!\n\n"
        "Date: {{appointment_date}}\n"
        "Time: {{appointment_time}}\n"
        "Service: {{service_name}}\n"
        "Professional: {{professional_name}}\n\n"
        "{{company_name}} {{company_phone}}\n\n"
        "_Reply YES to confirm or CANCEL to cancel._"
    ),
    "reminder": (
        "*Appointment reminder*\n\n"
        "Hello {{customer_name}}, see you soon:\n"
        "Date: {{appointment_date}}\n"
        "Time: {{appointment_time}}\n"
        "Service: {{service_name}}\n\n"
        "{{company_name}}\n{{company_address}}\n\n"
        "_Reply YES to confirm or CANCEL to cancel._"
    ),
    "cancellation": (
        "*Appointment cancelled*\n\n"
        "Hello {{customer_name}}, your appointment on {{appointment_date}} at "
        "{{appointment_time}} ({{service_name}}) was cancelled.\n\n"
        "To book again call {{company_phone}}.\n{{company_name}}"
    ),
    "reschedule": (
        "*Appointment rescheduled*\n\n"
        "Hello {{customer_name}}, your new time is:\n"
        "Date: {{appointment_date}}\n"
        "Time: {{appointment_time}}\n"
        "Service: {{service_name}}\n\n"
        "{{company_name}} {{company_phone}}\n\n"
        "_Reply CANCEL to cancel._"
    ),
}

SMS_BODIES = {
    "confirmation": (
        "Appointment confirmed: {{customer_name}} {{appointment_date}} {{appointment_time}} - "
        "{{service_name}} - {{company_name}}. Reply YES to confirm, CANCEL to cancel."
    ),
    "reminder": (
        "REMINDER {{customer_name}}: {{appointment_date}} {{appointment_time}} - {{service_name}} - {{company_name}}. "
        "Reply YES to confirm, CANCEL to cancel."
    ),
    "cancellation": (
        "CANCELLED {{customer_name}}: {{appointment_date}} {{appointment_time}} - {{service_name}} - {{company_name}}. "
        "To rebook call {{company_phone}}."
    ),
    "reschedule": (
        "RESCHEDULED {{customer_name}}: new time {{appointment_date}} {{appointment_time}} - {{service_name}} - {{company_name}}."
    ),
}

EMAIL_SUBJECTS = {
    "confirmation": "Appointment confirmed - {{company_name}}",
    "reminder": "Reminder: your appointment - {{company_name}}",
    "cancellation": "Appointment cancelled - {{company_name}}",
    "reschedule": "Appointment rescheduled - {{company_name}}",
}

EMAIL_HEADINGS = {
    "confirmation": "Your appointment is confirmed",
    "reminder": "Your appointment is coming up",
    "cancellation": "Your appointment was cancelled",
    "reschedule": "Your appointment was rescheduled",
}

EMAIL_BODY = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="font-size: 22px;">{heading}</h1>
  <p>Hello <strong>{{{{customer_name}}}}</strong>,</p>
  <table style="width: 100%; border-collapse: collapse;">
    <tr><td><strong>Date:</strong></td><td>{{{{appointment_date}}}}</td></tr>
    <tr><td><strong>Time:</strong></td><td>{{{{appointment_time}}}}</td></tr>
    <tr><td><strong>Service:</strong></td><td>{{{{service_name}}}}</td></tr>
    <tr><td><strong>Professional:</strong></td><td>{{{{professional_name}}}}</td></tr>
  </table>
  <p>{{{{company_name}}}}<br>{{{{company_address}}}}<br>{{{{company_phone}}}}</p>
</div>
"""

HELP_MENU_BODY = (
    "Available commands:\n"
    "YES - confirm your appointment\n"
    "CANCEL - cancel your appointment\n"
    "RESCHEDULE - ask us to move your appointment\n"
    "HELP - show this menu\n\n"
    "{{company_name}}"
)


def default_templates() -> list[dict]:
    """Template definitions keyed the same way as `MessageTemplate` columns."""

    templates = []
    for notification_type in ("confirmation", "reminder", "cancellation", "reschedule"):
        templates.append(
            {
                "name": notification_type,
                "channel": "whatsapp",
                "notification_type": notification_type,
                "body_template": CONVERSATIONAL_BODIES[notification_type],
                "subject_template": None,
                "required_variables": list(APPOINTMENT_VARIABLES),
            }
        )
        templates.append(
            {
                "name": notification_type,
                "channel": "sms",
                "notification_type": notification_type,
                "body_template": SMS_BODIES[notification_type],
                "subject_template": None,
                "required_variables": list(APPOINTMENT_VARIABLES),
            }
        )
        templates.append(
            {
                "name": notification_type,
                "channel": "email",
                "notification_type": notification_type,
                "body_template": EMAIL_BODY.format(heading=EMAIL_HEADINGS[notification_type]),
                "subject_template": EMAIL_SUBJECTS[notification_type],
                "required_variables": list(APPOINTMENT_VARIABLES),
            }
        )
    for channel in ("whatsapp", "sms"):
        templates.append(
            {
                "name": "help_menu",
                "channel": channel,
                "notification_type": "custom",
                "body_template": HELP_MENU_BODY,
                "subject_template": None,
                "required_variables": [],
            }
        )
    return templates
