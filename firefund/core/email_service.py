"""
Email service for FireFund - receipt emails over SMTP
HTML/Text emails rendered from simple {{variable}} templates
"""

import smtplib
import ssl
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
import re
import asyncio
import logging


logger = logging.getLogger(__name__)


@dataclass
class EmailAddress:
    """Email address with optional display name"""
    email: str
    name: Optional[str] = None

    def __str__(self):
        if self.name:
            return f"{self.name} <{self.email}>"
        return self.email


@dataclass
class EmailMessage:
    """Email message model"""
    to: List[EmailAddress]
    subject: str
    html_body: Optional[str] = None
    text_body: Optional[str] = None
    reply_to: Optional[EmailAddress] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class SMTPConfig:
    """SMTP configuration"""
    host: str
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    use_ssl: bool = False
    timeout: int = 30
    from_email: str = ""
    from_name: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'SMTPConfig':
        smtp = config.get('smtp', {})
        return cls(
            host=smtp.get('host', 'localhost'),
            port=int(smtp.get('port', 587)),
            username=smtp.get('username', ''),
            password=smtp.get('password', ''),
            use_tls=bool(smtp.get('use_tls', True)),
            use_ssl=bool(smtp.get('use_ssl', False)),
            timeout=int(smtp.get('timeout', 30)),
            from_email=smtp.get('from_email', ''),
            from_name=smtp.get('from_name')
        )


class TemplateEngine:
    """Simple template engine for email templates"""

    def __init__(self):
        self.variable_pattern = re.compile(r'\{\{(\w+(?:\.\w+)*)\}\}')

    def render(self, template: str, variables: Dict[str, Any]) -> str:
        """Render template with variables; unknown variables are left as-is"""
        def replace_var(match):
            value = self._get_nested_value(variables, match.group(1))
            return str(value) if value is not None else match.group(0)

        return self.variable_pattern.sub(replace_var, template)

    def _get_nested_value(self, data: Dict[str, Any], path: str) -> Any:
        """Get nested value from dictionary using dot notation"""
        value = data
        for key in path.split('.'):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None
        return value


PAYMENT_METHOD_LABELS = {
    'cash': 'Espèces',
    'check': 'Chèque',
    'card': 'Carte bancaire',
    'transfer': 'Virement',
}


RECEIPT_EMAIL_TEMPLATE = {
    'subject_template': 'Merci {{donator_name}} ! Votre reçu de don {{receipt_number}}',
    'html_body_template': '''
    <html>
    <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #dc2626;">{{association_name}}</h2>
        <p>Bonjour {{donator_name}},</p>
        <p>Merci pour votre soutien à nos sapeurs-pompiers.</p>
        <div style="background: #f8f9fa; padding: 15px; border-radius: 5px; margin: 15px 0;">
            <p><strong>Reçu n°</strong> {{receipt_number}}</p>
            <p><strong>Date :</strong> {{donation_date}}</p>
            <p><strong>Montant :</strong> {{amount}} €</p>
            <p><strong>Calendriers :</strong> {{calendars_given}}</p>
            <p><strong>Mode de paiement :</strong> {{payment_method_label}}</p>
            <p><strong>Sapeur :</strong> {{sapeur_name}}</p>
        </div>
        <p style="color: #666; font-size: 12px;">
            {{association_address}}<br>
            SIREN : {{association_siren}} - RNA : {{association_rna}}<br>
            {{legal_text}}
        </p>
    </body>
    </html>
    ''',
    'text_body_template': '''
    {{association_name}}

    Bonjour {{donator_name}},

    Merci pour votre soutien à nos sapeurs-pompiers.

    Reçu n° {{receipt_number}}
    - Date : {{donation_date}}
    - Montant : {{amount}} €
    - Calendriers : {{calendars_given}}
    - Mode de paiement : {{payment_method_label}}
    - Sapeur : {{sapeur_name}}

    {{association_address}}
    SIREN : {{association_siren}} - RNA : {{association_rna}}
    {{legal_text}}
    '''
}


class EmailService:
    """Email service with template support"""

    def __init__(self, smtp_config: SMTPConfig):
        self.smtp_config = smtp_config
        self.template_engine = TemplateEngine()

    def render_receipt_email(self, receipt_data: Dict[str, Any]) -> EmailMessage:
        """Build the receipt email for ``receipt_data``"""
        variables = {
            **receipt_data,
            'payment_method_label': PAYMENT_METHOD_LABELS.get(
                receipt_data.get('payment_method'), receipt_data.get('payment_method')
            ),
        }

        return EmailMessage(
            to=[EmailAddress(email=receipt_data['donator_email'], name=receipt_data.get('donator_name'))],
            subject=self.template_engine.render(RECEIPT_EMAIL_TEMPLATE['subject_template'], variables),
            html_body=self.template_engine.render(RECEIPT_EMAIL_TEMPLATE['html_body_template'], variables),
            text_body=self.template_engine.render(RECEIPT_EMAIL_TEMPLATE['text_body_template'], variables),
            headers={
                'X-Receipt-Number': str(receipt_data.get('receipt_number', '')),
                'X-Amount': str(receipt_data.get('amount', '')),
            }
        )

    async def send_email(self, message: EmailMessage) -> bool:
        """Send email message"""
        return await asyncio.to_thread(self._send_smtp_sync, message)

    async def test_connection(self) -> bool:
        """Test SMTP connection"""
        try:
            await asyncio.to_thread(self._test_smtp_connection)
            return True
        except (OSError, smtplib.SMTPException) as e:
            logger.warning(f"SMTP connection test failed: {e}")
            return False

    def _connect(self) -> smtplib.SMTP:
        if self.smtp_config.use_ssl:
            server = smtplib.SMTP_SSL(self.smtp_config.host, self.smtp_config.port,
                                      timeout=self.smtp_config.timeout)
        else:
            server = smtplib.SMTP(self.smtp_config.host, self.smtp_config.port,
                                  timeout=self.smtp_config.timeout)

        if self.smtp_config.use_tls and not self.smtp_config.use_ssl:
            server.starttls(context=ssl.create_default_context())

        if self.smtp_config.username and self.smtp_config.password:
            server.login(self.smtp_config.username, self.smtp_config.password)

        return server

    def _test_smtp_connection(self):
        server = self._connect()
        server.quit()

    def build_mime(self, message: EmailMessage) -> MIMEMultipart:
        """Create the MIME message"""
        mime_msg = MIMEMultipart('alternative')
        mime_msg['Subject'] = message.subject
        mime_msg['From'] = (
            f"{self.smtp_config.from_name} <{self.smtp_config.from_email}>"
            if self.smtp_config.from_name else self.smtp_config.from_email
        )
        mime_msg['To'] = ", ".join(str(addr) for addr in message.to)

        if message.reply_to:
            mime_msg['Reply-To'] = str(message.reply_to)

        for name, value in message.headers.items():
            mime_msg[name] = value

        if message.text_body:
            mime_msg.attach(MIMEText(message.text_body, 'plain', 'utf-8'))

        if message.html_body:
            mime_msg.attach(MIMEText(message.html_body, 'html', 'utf-8'))

        return mime_msg

    def _send_smtp_sync(self, message: EmailMessage) -> bool:
        mime_msg = self.build_mime(message)
        server = self._connect()
        try:
            server.send_message(mime_msg, to_addrs=[addr.email for addr in message.to])
        finally:
            server.quit()

        logger.info(f"Email sent to {len(message.to)} recipient(s): {message.subject}")
        return True
