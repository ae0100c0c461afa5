"""
Email and SMS delivery for clinic events.

Senders talk to the Resend (email) and Twilio (SMS) HTTP APIs through httpx.
They validate the destination first and never raise: every failure is logged
and reported back as ``{"success": False, "error": ...}``.
"""

from __future__ import annotations

import html
import logging
import os
import re
from typing import Any, Dict, List, Optional

import httpx

log = logging.getLogger("clinicdesk.notifications")

CLINIC_NAME = os.getenv("CLINIC_NAME", "Centre For Sports Science")
CLINIC_PHONE = os.getenv("CLINIC_PHONE", "")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")
HTTP_TIMEOUT_SECS = float(os.getenv("NOTIFY_HTTP_TIMEOUT_SECS", "10"))

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value.strip()))


def format_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Normalize to E.164. Ten digits without a country code are taken as a
    North American number; a single leading trunk zero is dropped.
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    cleaned = digits[1:] if digits.startswith("0") else digits
    if len(cleaned) < 7 or len(cleaned) > 15:
        return None
    if phone.strip().startswith("+"):
        return "+" + digits
    if len(cleaned) == 10:
        return "+1" + cleaned
    return "+" + cleaned


def is_valid_phone_number(phone: Optional[str]) -> bool:
    formatted = format_phone_number(phone)
    return bool(formatted) and bool(E164_RE.match(formatted))


# ---------------------------------------------------------------------------
# Templates


def _s(data: Dict[str, Any], key: str, default: str = "") -> str:
    v = data.get(key)
    return default if v is None else str(v)


def email_subject(template: str, data: Dict[str, Any]) -> str:
    if template == "appointment-created":
        return f"Appointment Confirmed - {_s(data, 'date')} at {_s(data, 'time')}"
    if template == "appointment-cancelled":
        return f"Appointment Cancelled - {_s(data, 'date')}"
    if template == "appointment-updated":
        return f"Appointment Updated - {_s(data, 'date')} at {_s(data, 'time')}"
    if template == "transfer-requested":
        return f"Patient Transfer Request - {_s(data, 'patientName')}"
    if template == "transfer-request-sent":
        return f"Patient Transfer Requested - {_s(data, 'patientName')}"
    if template == "transfer-accepted":
        return f"Transfer Request Accepted - {_s(data, 'patientName')}"
    if template == "transfer-rejected":
        return f"Transfer Request Rejected - {_s(data, 'patientName')}"
    if template == "patient-transferred":
        return f"Patient Transferred - {_s(data, 'patientName')}"
    return f"Notification from {CLINIC_NAME}"


def render_text(template: str, data: Dict[str, Any]) -> str:
    """Plain-text body, used for SMS and as the core of the HTML email."""
    patient = _s(data, "patientName")
    pid = _s(data, "patientId")
    label = f"{patient} ({pid})" if pid else patient
    if template == "appointment-created":
        msg = (
            f"Hi {patient}, your appointment is confirmed with {CLINIC_NAME}.\n\n"
            f"Date: {_s(data, 'date')}\nTime: {_s(data, 'time')}\nClinician: {_s(data, 'doctor')}\n"
        )
        if data.get("appointmentId"):
            msg += f"Appt ID: {_s(data, 'appointmentId')}\n"
        msg += "\nPlease arrive 10 mins early."
        if CLINIC_PHONE:
            msg += f" Questions? Call {CLINIC_PHONE}"
        return msg
    if template == "appointment-cancelled":
        msg = f"Hi {patient}, your appointment on {_s(data, 'date')} at {_s(data, 'time')} has been cancelled.\n\n"
        msg += f"To reschedule, call {CLINIC_PHONE}" if CLINIC_PHONE else "Please contact us to reschedule."
        return msg
    if template == "appointment-updated":
        return (
            f"Hi {patient}, your appointment with {CLINIC_NAME} has been updated.\n\n"
            f"Date: {_s(data, 'date')}\nTime: {_s(data, 'time')}\nClinician: {_s(data, 'doctor')}"
        )
    if template == "transfer-requested":
        return (
            f"{_s(data, 'requestedBy', 'A therapist')} has requested to transfer {label} to you. "
            "Please accept or reject the request."
        )
    if template == "transfer-request-sent":
        return (
            f"A transfer request has been sent for {label} to {_s(data, 'toTherapist')}. "
            "Waiting for acceptance."
        )
    if template == "transfer-accepted":
        return f"{_s(data, 'toTherapist')} has accepted the transfer request for {label}."
    if template == "transfer-rejected":
        return f"{_s(data, 'toTherapist')} has rejected the transfer request for {label}."
    if template == "patient-transferred":
        return f"{label} has been transferred from you to {_s(data, 'toTherapist')}."
    return f"You have a new notification from {CLINIC_NAME}."


def render_html(template: str, data: Dict[str, Any]) -> str:
    title = html.escape(email_subject(template, data))
    paragraphs = "".join(
        f"<p>{html.escape(line)}</p>" for line in render_text(template, data).split("\n") if line.strip()
    )
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
        f"<div style=\"max-width:600px;margin:0 auto;font-family:Arial,sans-serif;color:#334155\">"
        f"<h1 style=\"font-size:22px\">{title}</h1>{paragraphs}"
        f"<p>Best regards,<br>The {html.escape(CLINIC_NAME)} Team</p></div></body></html>"
    )


# ---------------------------------------------------------------------------
# Senders


def send_email(to: str, subject: str, template: str, data: Dict[str, Any]) -> Dict[str, Any]:
    if not is_valid_email(to):
        log.warning("email: invalid address %r for template %s", to, template)
        return {"success": False, "error": "invalid email address"}
    api_key = os.getenv("RESEND_API_KEY", "")
    if not api_key:
        log.info("email: provider not configured, not sending %s to %s", template, to)
        return {"success": False, "error": "email service not configured"}
    payload = {
        "from": os.getenv("RESEND_FROM_EMAIL", "onboarding@resend.dev"),
        "to": [to.strip()],
        "subject": subject or email_subject(template, data),
        "html": render_html(template, data),
    }
    try:
        r = httpx.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {api_key}"},
            json=payload,
            timeout=HTTP_TIMEOUT_SECS,
        )
        r.raise_for_status()
    except Exception as e:
        log.error("email: failed to send %s to %s: %s", template, to, e)
        return {"success": False, "error": str(e)}
    log.info("email: sent %s to %s", template, to)
    return {"success": True}


def send_sms(to: str, template: str, data: Dict[str, Any]) -> Dict[str, Any]:
    formatted = format_phone_number(to)
    if not formatted or not is_valid_phone_number(to):
        log.warning("sms: invalid phone number %r for template %s", to, template)
        return {"success": False, "error": "invalid phone number"}
    sid = os.getenv("TWILIO_ACCOUNT_SID", "")
    token = os.getenv("TWILIO_AUTH_TOKEN", "")
    sender = os.getenv("TWILIO_PHONE_NUMBER", "")
    if not (sid and token and sender):
        log.info("sms: provider not configured, not sending %s to %s", template, formatted)
        return {"success": False, "error": "sms service not configured"}
    try:
        r = httpx.post(
            f"{TWILIO_API_BASE}/Accounts/{sid}/Messages.json",
            auth=(sid, token),
            data={"To": formatted, "From": sender, "Body": render_text(template, data)},
            timeout=HTTP_TIMEOUT_SECS,
        )
        r.raise_for_status()
    except Exception as e:
        log.error("sms: failed to send %s to %s: %s", template, formatted, e)
        return {"success": False, "error": str(e)}
    log.info("sms: sent %s to %s", template, formatted)
    return {"success": True}


# ---------------------------------------------------------------------------
# Jobs


def build_jobs(
    template: str,
    data: Dict[str, Any],
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """One delivery job per channel the recipient can be reached on."""
    jobs: List[Dict[str, Any]] = []
    if email:
        jobs.append(
            {
                "channel": "email",
                "to": email,
                "subject": email_subject(template, data),
                "template": template,
                "data": data,
            }
        )
    if phone:
        jobs.append({"channel": "sms", "to": phone, "template": template, "data": data})
    return jobs


def deliver(job: Dict[str, Any]) -> Dict[str, Any]:
    """Run one delivery job. Never raises."""
    try:
        channel = job.get("channel")
        data = job.get("data") or {}
        if channel == "email":
            return send_email(job.get("to") or "", job.get("subject") or "", job.get("template") or "", data)
        if channel == "sms":
            return send_sms(job.get("to") or "", job.get("template") or "", data)
        log.warning("notify: unknown channel %r", channel)
        return {"success": False, "error": "unknown channel"}
    except Exception as e:
        log.error("notify: delivery crashed for %r: %s", job.get("template"), e)
        return {"success": False, "error": str(e)}
