"""
Service wiring.

Adapters (gateways, scheduling, side-channel clients) are built once at
startup from Settings and shared; orchestrators are built per request around
the request's database session.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .config import Settings
from .models.payment import PaymentProvider
from .services.brevo_client import BrevoClient
from .services.calendar_client import CalendarClient
from .services.cancellation_service import CancellationService
from .services.finalization_service import FinalizationService
from .services.payment_gateway import PaymentGateway
from .services.reschedule_service import RescheduleService
from .services.scheduling_client import SchedulingClient
from .services.side_effects import SideEffectDispatcher, SideEffectOptions
from .services.stripe_gateway import StripeGateway
from .services.vault_gateway import VaultGateway
from .services.webhook_processor import WebhookProcessor, WebhookReceiver

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    gateways: Dict[str, PaymentGateway] = field(default_factory=dict)
    scheduling: Optional[SchedulingClient] = None
    side_effects: Optional[SideEffectDispatcher] = None
    default_provider: str = "stripe"
    currency: str = "usd"
    welcome_offer_code: str = ""

    def finalization(self, db: Session) -> FinalizationService:
        return FinalizationService(
            db,
            self.gateways,
            scheduling=self.scheduling,
            side_effects=self.side_effects,
            default_provider=self.default_provider,
            currency=self.currency,
            welcome_offer_code=self.welcome_offer_code,
        )

    def cancellation(self, db: Session) -> CancellationService:
        return CancellationService(db, self.gateways, side_effects=self.side_effects)

    def reschedule(self, db: Session) -> RescheduleService:
        return RescheduleService(db, scheduling=self.scheduling, side_effects=self.side_effects)

    def webhook_receiver(self, db: Session, request_id: Optional[str] = None) -> WebhookReceiver:
        return WebhookReceiver(db, provider=PaymentProvider.STRIPE.value, request_id=request_id)

    def webhook_processor(self, db: Session) -> WebhookProcessor:
        return WebhookProcessor(db, self.finalization(db), side_effects=self.side_effects)


def build_container(settings: Settings) -> ServiceContainer:
    gateways: Dict[str, PaymentGateway] = {}
    if settings.stripe_secret_key:
        gateways[PaymentProvider.STRIPE.value] = StripeGateway.from_api_key(
            settings.stripe_secret_key, currency=settings.currency
        )
    if settings.vault_security_key:
        gateways[PaymentProvider.VAULT.value] = VaultGateway(
            security_key=settings.vault_security_key,
            transact_url=settings.vault_api_url,
            query_url=settings.vault_query_url,
            currency=settings.currency,
            save_cards=settings.vault_save_cards,
            timeout=settings.payment_timeout_seconds,
        )
    if not gateways:
        logger.warning("No payment gateway configured, finalization and refunds will fail")

    scheduling = None
    if settings.scheduling_api_token:
        scheduling = SchedulingClient(
            settings.scheduling_base_url,
            settings.scheduling_api_token,
            timeout=settings.scheduling_timeout_seconds,
        )
    else:
        logger.warning("Scheduling service not configured, holds will not be confirmed")

    calendar = None
    if settings.calendar_enabled and settings.calendar_access_token:
        calendar = CalendarClient(
            settings.calendar_base_url,
            settings.calendar_access_token,
            timeout=settings.side_effect_timeout_seconds,
        )

    brevo = None
    if (settings.email_enabled or settings.crm_enabled) and settings.brevo_api_key:
        brevo = BrevoClient(
            settings.brevo_base_url,
            settings.brevo_api_key,
            sender_email=settings.email_sender_address,
            sender_name=settings.email_sender_name,
            timeout=settings.side_effect_timeout_seconds,
        )

    side_effects = SideEffectDispatcher(
        SideEffectOptions(
            calendar_enabled=settings.calendar_enabled,
            crm_enabled=settings.crm_enabled,
            email_enabled=settings.email_enabled,
            crm_list_id=settings.brevo_list_id,
            display_timezone=settings.display_timezone,
            currency=settings.currency,
        ),
        scheduling=scheduling,
        calendar=calendar,
        brevo=brevo,
    )

    logger.info(
        f"Services ready: gateways={sorted(gateways)} scheduling={'on' if scheduling else 'off'} "
        f"calendar={'on' if calendar else 'off'} email/crm={'on' if brevo else 'off'}"
    )
    return ServiceContainer(
        gateways=gateways,
        scheduling=scheduling,
        side_effects=side_effects,
        default_provider=settings.default_payment_provider,
        currency=settings.currency,
        welcome_offer_code=settings.welcome_offer_code,
    )
