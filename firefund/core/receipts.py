"""
Receipt service for FireFund
Assigns receipt numbers, deduplicates requests, delivers receipts through
the n8n workflow or directly over SMTP and applies workflow callbacks
"""

import logging
import re
import smtplib
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, func

from firefund.core.database import db_service
from firefund.core.email_service import EmailService, RECEIPT_EMAIL_TEMPLATE
from firefund.core.models import (
    TransactionDB, ProfileDB, EmailLogDB, WorkflowLogDB,
    ReceiptStatus, EmailStatus, utcnow
)
from firefund.integrations.n8n_adapter import N8nAdapter


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
CALLBACK_STATUSES = ('success', 'failed', 'running')
RECEIPT_ACTION = 'generate_and_send_receipt'


class ReceiptError(Exception):
    """Base class for receipt failures"""


class TransactionNotFoundError(ReceiptError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction '{transaction_id}' not found")


class InvalidDonorEmailError(ReceiptError):
    pass


class CallbackValidationError(ReceiptError):
    pass


class ReceiptDeliveryError(ReceiptError):
    """Delivery failed; ``result`` holds what was recorded"""

    def __init__(self, message: str, result: Dict[str, Any]):
        self.result = result
        super().__init__(message)


def generate_receipt_number(transaction_id: str, created_at: datetime) -> str:
    """RECU-YYYY-MM-DD-XXXXXX from the donation date and the end of its id"""
    return f"RECU-{created_at.strftime('%Y-%m-%d')}-{transaction_id[-6:].upper()}"


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


class IdempotencyCache:
    """In-memory result cache with a TTL, pruned when it grows too large"""

    def __init__(self, ttl_seconds: float = 300, max_size: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, tuple] = {}

    @staticmethod
    def make_key(transaction_id: str, resend: bool, quality: str) -> str:
        return f"{transaction_id}-{'resend' if resend else 'initial'}-{quality}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Dict[str, Any]):
        self._entries[key] = (self._clock(), value)
        if len(self._entries) > self.max_size:
            self.prune()

    def prune(self, force: bool = False) -> int:
        """Drop expired entries, or all of them with ``force``; returns count removed"""
        if force:
            removed = len(self._entries)
            self._entries.clear()
            return removed

        now = self._clock()
        expired = [key for key, (stored_at, _) in self._entries.items()
                   if now - stored_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self):
        return len(self._entries)


class ReceiptService:
    """Receipt generation and delivery"""

    def __init__(self, config: Dict[str, Any], n8n_adapter: N8nAdapter,
                 email_service: EmailService, session_factory=None,
                 cache: Optional[IdempotencyCache] = None):
        self.receipts_config = config.get('receipts', {})
        self.delivery = self.receipts_config.get('delivery', 'n8n')
        self.n8n_adapter = n8n_adapter
        self.email_service = email_service
        self.session_factory = session_factory or db_service.get_session
        self.cache = cache or IdempotencyCache(
            ttl_seconds=self.receipts_config.get('idempotency_ttl_seconds', 300)
        )

    def _association_data(self) -> Dict[str, Any]:
        return {
            'association_name': self.receipts_config.get('association_name', ''),
            'association_address': self.receipts_config.get('association_address', ''),
            'association_siren': self.receipts_config.get('association_siren', ''),
            'association_rna': self.receipts_config.get('association_rna', ''),
            'legal_text': self.receipts_config.get('legal_text', ''),
            'template_version': self.receipts_config.get('template_version', 'v1'),
        }

    def build_receipt_data(self, transaction: TransactionDB, receipt_number: str,
                           donator_name: Optional[str], donator_email: str,
                           sapeur_name: Optional[str]) -> Dict[str, Any]:
        created_at = transaction.created_at or utcnow()
        return {
            'transaction_id': transaction.id,
            'receipt_number': receipt_number,
            'donator_name': donator_name or 'Donateur',
            'donator_email': donator_email,
            'amount': round(float(transaction.amount), 2),
            'calendars_given': transaction.calendars_given,
            'payment_method': transaction.payment_method,
            'donation_date': created_at.strftime('%d/%m/%Y'),
            'sapeur_name': sapeur_name or 'Sapeur-pompier',
            'team_id': transaction.team_id,
            **self._association_data(),
        }

    async def send_receipt(self, transaction_id: str, resend: bool = False,
                           donator_name: Optional[str] = None,
                           donator_email: Optional[str] = None,
                           quality: str = 'standard', send_email: bool = True,
                           user_agent: Optional[str] = None) -> Dict[str, Any]:
        """Request a receipt for a transaction.

        Raises TransactionNotFoundError, InvalidDonorEmailError or
        ReceiptDeliveryError. The delivery failure is committed before the
        error is raised, so the transaction and email log show ``failed``.
        """
        cache_key = IdempotencyCache.make_key(transaction_id, resend, quality)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"Receipt request {cache_key} served from cache")
            return {**cached, 'from_cache': True}

        async with self.session_factory() as session:
            transaction = await session.get(TransactionDB, transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(transaction_id)

            email = donator_email or transaction.donator_email
            name = donator_name or transaction.donator_name
            if not is_valid_email(email):
                raise InvalidDonorEmailError(f"Invalid donor email: {email!r}")

            if not resend and transaction.receipt_status in (
                    ReceiptStatus.GENERATED.value, ReceiptStatus.EMAILED.value):
                result = {
                    'success': True,
                    'is_existing': True,
                    'from_cache': False,
                    'transaction_id': transaction.id,
                    'receipt_number': transaction.receipt_number,
                    'receipt_status': transaction.receipt_status,
                    'pdf_url': transaction.receipt_pdf_url,
                }
                self.cache.set(cache_key, result)
                return result

            profile = await session.get(ProfileDB, transaction.user_id)
            receipt_number = transaction.receipt_number or generate_receipt_number(
                transaction.id, transaction.created_at or utcnow()
            )
            receipt_data = self.build_receipt_data(
                transaction, receipt_number, name, email,
                profile.full_name if profile else None
            )

            email_log = EmailLogDB(
                transaction_id=transaction.id,
                email_to=email,
                subject=self.email_service.template_engine.render(
                    RECEIPT_EMAIL_TEMPLATE['subject_template'], receipt_data
                ),
                status=EmailStatus.PENDING.value,
                receipt_number=receipt_number,
                user_agent=user_agent,
            )
            session.add(email_log)

            transaction.receipt_number = receipt_number
            transaction.receipt_status = ReceiptStatus.PENDING.value
            transaction.receipt_requested_at = utcnow()
            await session.flush()

            if self.delivery == 'smtp':
                error, extra = await self._deliver_smtp(receipt_data, email_log, transaction)
            else:
                error, extra = await self._deliver_n8n(
                    session, receipt_data, send_email, quality, transaction
                )

            if error:
                email_log.status = EmailStatus.FAILED.value
                email_log.error_message = error
                transaction.receipt_status = ReceiptStatus.FAILED.value

            result = {
                'success': error is None,
                'is_existing': False,
                'from_cache': False,
                'transaction_id': transaction.id,
                'receipt_number': receipt_number,
                'receipt_status': transaction.receipt_status,
                'email_log_id': email_log.id,
                'delivery': self.delivery,
                **extra,
            }
            if error:
                result['error'] = error
            await session.commit()

        if error:
            logger.error(f"Receipt {receipt_number} delivery failed: {error}")
            raise ReceiptDeliveryError(error, result)

        logger.info(f"Receipt {receipt_number} requested via {self.delivery}")
        self.cache.set(cache_key, result)
        return result

    async def _deliver_n8n(self, session, receipt_data, send_email, quality, transaction):
        started = time.monotonic()
        response = await self.n8n_adapter.send_receipt_request(
            receipt_data, send_email=send_email, quality=quality
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)

        session.add(WorkflowLogDB(
            transaction_id=transaction.id,
            workflow_id=response.workflow_id,
            action=RECEIPT_ACTION,
            request_payload=response.payload,
            response_data=response.response_data,
            success=response.success,
            error_message=response.error,
            processing_time_ms=elapsed_ms,
        ))

        if not response.success:
            return response.error or "n8n workflow request failed", {}

        return None, {
            'workflow_id': response.workflow_id,
            'estimated_processing_time': response.estimated_processing_time,
        }

    async def _deliver_smtp(self, receipt_data, email_log, transaction):
        message = self.email_service.render_receipt_email(receipt_data)
        try:
            await self.email_service.send_email(message)
        except (OSError, smtplib.SMTPException) as e:
            return f"SMTP delivery failed: {e}", {}

        now = utcnow()
        email_log.status = EmailStatus.SENT.value
        email_log.sent_at = now
        transaction.receipt_status = ReceiptStatus.EMAILED.value
        return None, {'sent_at': now.isoformat()}

    async def process_workflow_callback(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply an n8n callback to the workflow log, email log and transaction"""
        missing = [f for f in ('workflow_id', 'execution_id', 'status') if not data.get(f)]
        if missing:
            raise CallbackValidationError(f"Missing required fields: {', '.join(missing)}")

        status = data['status']
        if status not in CALLBACK_STATUSES:
            raise CallbackValidationError(f"Invalid status: {status}")

        result = data.get('result') or {}

        async with self.session_factory() as session:
            workflow_log = (await session.execute(
                select(WorkflowLogDB)
                .where(WorkflowLogDB.workflow_id == data['workflow_id'])
                .order_by(WorkflowLogDB.created_at.desc(), WorkflowLogDB.id.desc())
                .limit(1)
            )).scalar_one_or_none()

            transaction_id = data.get('transaction_id') or (
                workflow_log.transaction_id if workflow_log else None
            )

            if workflow_log is not None:
                workflow_log.response_data = data
                workflow_log.success = status == 'success'
                workflow_log.error_message = result.get('error')
                if result.get('processing_time') is not None:
                    workflow_log.processing_time_ms = int(result['processing_time'])

            if status == 'running':
                logger.info(f"Workflow {data['workflow_id']} still running")
                return {'success': True, 'status': status, 'transaction_id': transaction_id,
                        'updated': False}

            if transaction_id:
                await self._apply_callback_outcome(session, transaction_id, status, result)

        logger.info(f"Workflow {data['workflow_id']} callback applied: {status}")
        return {'success': True, 'status': status, 'transaction_id': transaction_id,
                'updated': transaction_id is not None}

    async def _apply_callback_outcome(self, session, transaction_id: str, status: str,
                                      result: Dict[str, Any]):
        now = utcnow()

        email_log = (await session.execute(
            select(EmailLogDB)
            .where(EmailLogDB.transaction_id == transaction_id)
            .order_by(EmailLogDB.created_at.desc(), EmailLogDB.id.desc())
            .limit(1)
        )).scalar_one_or_none()

        if email_log is not None:
            if status == 'success' and result.get('email_sent'):
                email_log.status = EmailStatus.SENT.value
                email_log.sent_at = now
            else:
                email_log.status = EmailStatus.FAILED.value
                email_log.error_message = result.get('error') or email_log.error_message

        transaction = await session.get(TransactionDB, transaction_id)
        if transaction is None:
            logger.warning(f"Callback for unknown transaction {transaction_id}")
            return

        if status == 'success':
            transaction.receipt_status = ReceiptStatus.GENERATED.value
            transaction.receipt_pdf_url = result.get('pdf_url')
            transaction.receipt_generated_at = now
        else:
            transaction.receipt_status = ReceiptStatus.FAILED.value

    async def email_stats(self, hours: int = 24) -> Dict[str, int]:
        """Email log counts by status over the last ``hours``"""
        cutoff = utcnow() - timedelta(hours=hours)
        stats = {status.value: 0 for status in EmailStatus}

        async with self.session_factory() as session:
            rows = await session.execute(
                select(EmailLogDB.status, func.count(EmailLogDB.id))
                .where(EmailLogDB.created_at >= cutoff)
                .group_by(EmailLogDB.status)
            )
            for status, count in rows.all():
                stats[status] = count

        stats['total'] = sum(stats.values())
        return stats

    async def health(self) -> Dict[str, Any]:
        configuration = self.n8n_adapter.validate_configuration()
        connection = await self.n8n_adapter.test_connection() if configuration['valid'] else {
            'success': False, 'error': 'not configured'
        }

        if self.delivery == 'smtp':
            healthy = await self.email_service.test_connection()
        else:
            healthy = connection.get('success', False)

        return {
            'status': 'healthy' if healthy else 'degraded',
            'delivery': self.delivery,
            'n8n': {
                'configuration': configuration,
                'connection': connection,
            },
            'email_stats_24h': await self.email_stats(24),
            'cache_size': len(self.cache),
            'timestamp': datetime.now().isoformat(),
        }

    def clear_cache(self, force: bool = False) -> Dict[str, int]:
        removed = self.cache.prune(force=force)
        logger.info(f"Receipt cache pruned: {removed} entries removed")
        return {'removed': removed, 'remaining': len(self.cache)}
