"""
MJML Email Templates
OTP email rendering. Every function here is pure: same inputs, same output,
no I/O.
"""

import logging
from typing import Optional

from mjml import mjml_to_html

from .schemas import RenderedMessage
from .utils.sanitization import sanitize_string

logger = logging.getLogger(__name__)

# BrightCare theme colors - Blue/Slate
THEME = {
    "primary": "#4280EF",
    "primary_dark": "#2f63c4",
    "primary_light": "#e8f0fe",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "warning": "#f59e0b",
    "danger": "#e74c3c",
}


class TemplateRenderError(Exception):
    pass


def get_base_template(title: str, preview_text: str, content_sections: str, app_name: str) -> str:
    """Base MJML template wrapper for transactional emails"""
    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', 'Helvetica Neue', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <!-- Header -->
        <mj-section background-color="{THEME['primary']}" padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="26px" font-weight="700" color="#ffffff" padding="0">
              🔐 {app_name}
            </mj-text>
            <mj-text align="center" font-size="15px" color="#ffffff" padding="8px 0 0 0">
              {title}
            </mj-text>
          </mj-column>
        </mj-section>

        {content_sections}

        <!-- Footer -->
        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="0">
              <strong>This is an automated message from {app_name}</strong>
            </mj-text>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="4px 0 0 0">
              Please do not reply to this email.
            </mj-text>
            <mj-text align="center" font-size="12px" color="#94a3b8" padding="12px 0 0 0">
              © BrightCare Healthcare Solutions. All rights reserved.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def otp_subject(app_name: str, otp: str) -> str:
    return f"🔐 {app_name} - Your OTP Code: {otp}"


def otp_email_template(
    otp: str, expiry_minutes: int, app_name: str, auth_method: Optional[str] = None
) -> str:
    """Password reset OTP MJML template"""
    app_name = sanitize_string(app_name)
    otp = sanitize_string(otp)

    delivery_note = ""
    if auth_method:
        delivery_note = f"""
            <mj-text align="center" font-size="11px" color="#94a3b8" padding="16px 0 0 0">
              Sent via {auth_method} secure email delivery
            </mj-text>
        """

    content = f"""
        <mj-section background-color="#ffffff" padding="40px 40px 20px 40px">
          <mj-column>
            <mj-text font-size="18px" font-weight="600" color="{THEME['text_primary']}" padding="0 0 16px 0">
              Hello!
            </mj-text>
            <mj-text>
              You requested a One-Time Password (OTP) for your {app_name} account. Please use the code below to verify your identity and proceed with your password reset.
            </mj-text>
          </mj-column>
        </mj-section>

        <!-- OTP Section -->
        <mj-section background-color="{THEME['primary_light']}" padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="14px" color="{THEME['text_muted']}" text-transform="uppercase" letter-spacing="1px" font-weight="600" padding="0 0 12px 0">
              Your OTP Code
            </mj-text>
            <mj-text align="center" font-size="36px" font-weight="700" color="{THEME['primary']}" letter-spacing="8px" font-family="'Courier New', monospace" padding="0">
              {otp}
            </mj-text>
            <mj-text align="center" font-size="14px" color="{THEME['text_muted']}" padding="12px 0 0 0">
              ⏰ Expires in {expiry_minutes} minutes
            </mj-text>
          </mj-column>
        </mj-section>

        <mj-section background-color="#ffffff" padding="24px 40px 40px 40px">
          <mj-column>
            <mj-text font-size="15px" font-weight="600" color="{THEME['text_primary']}" padding="0 0 8px 0">
              📱 How to use this code:
            </mj-text>
            <mj-text padding="0 0 16px 0">
              1. Open the {app_name} app on your device<br />
              2. Go to the "Verify OTP" screen<br />
              3. Enter the 6-digit code exactly as shown above<br />
              4. Complete your password reset process
            </mj-text>
            <mj-text font-size="14px" color="{THEME['danger']}" padding="0 0 16px 0">
              🚨 <strong>Security Notice:</strong> This code can only be used once and will expire in {expiry_minutes} minutes. Never share this code with anyone!
            </mj-text>
            <mj-text color="{THEME['text_muted']}" font-size="14px" padding="0">
              If you didn't request this OTP, please ignore this email and ensure your account is secure.
            </mj-text>
            {delivery_note}
          </mj-column>
        </mj-section>
    """

    return get_base_template(
        title="Your One-Time Password (OTP)",
        preview_text=f"Your {app_name} verification code expires in {expiry_minutes} minutes",
        content_sections=content,
        app_name=app_name,
    )


def otp_plain_text(
    otp: str, expiry_minutes: int, app_name: str, auth_method: Optional[str] = None
) -> str:
    lines = [
        f"🔐 {app_name} - Your OTP Code",
        "",
        "Hello!",
        "",
        f"You requested a One-Time Password (OTP) for your {app_name} account.",
        "",
        f"Your OTP Code: {otp}",
        "",
        f"⏰ This code will expire in {expiry_minutes} minutes.",
        "",
        "How to use:",
        f"1. Open the {app_name} app",
        '2. Go to "Verify OTP" screen',
        f"3. Enter the code: {otp}",
        "4. Complete your password reset",
        "",
        "🚨 Security Notice: Never share this code with anyone!",
        "",
        "If you didn't request this, please ignore this email.",
        "",
        "---",
        f"{app_name} - Secure Healthcare Solutions",
    ]
    if auth_method:
        lines.append(f"Sent via {auth_method} authentication")
    return "\n".join(lines)


def compile_mjml_to_html(mjml_content: str) -> str:
    """Compile MJML template to production-ready HTML"""
    try:
        result = mjml_to_html(mjml_content)
    except Exception as e:
        logger.error(f"MJML compilation error: {e}")
        raise TemplateRenderError(f"Failed to compile MJML template: {e}") from e

    # mjml_to_html returns a dict with 'html' and 'errors' keys
    if isinstance(result, dict):
        if result.get("errors"):
            logger.warning(f"MJML compilation warnings: {result['errors']}")
        return result.get("html", "")
    return str(result)


def render_otp_message(
    otp: str, expiry_minutes: int, app_name: str, auth_method: Optional[str] = None
) -> RenderedMessage:
    """Subject, HTML and plain-text parts of the OTP email"""
    return RenderedMessage(
        subject=otp_subject(app_name, otp),
        html=compile_mjml_to_html(otp_email_template(otp, expiry_minutes, app_name, auth_method)),
        text=otp_plain_text(otp, expiry_minutes, app_name, auth_method),
    )
