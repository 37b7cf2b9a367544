"""
Service wiring. Built once at startup (or per test) and handed to the API.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog

from config import CommerceConfig
from database import Database
from gateways.base import PaymentGatewayAdapter
from gateways.paypal_gateway import PayPalGateway
from gateways.stripe_gateway import StripeGateway
from schemas.orders import PaymentMethod
from services.audit import AuditTrail
from services.order_service import OrderService
from services.pricing import PricingEngine
from services.reconciliation import ReconciliationEngine
from storage.interfaces import (
    IAuditLog,
    IInventoryLedger,
    IOrderRepository,
    IPaymentIntentRepository,
    IRefundRepository,
)
from storage.memory import (
    InMemoryAuditLog,
    InMemoryInventoryLedger,
    InMemoryOrderRepository,
    InMemoryPaymentIntentRepository,
    InMemoryRefundRepository,
)
from storage.postgres import (
    PostgresAuditLog,
    PostgresInventoryLedger,
    PostgresOrderRepository,
    PostgresPaymentIntentRepository,
    PostgresRefundRepository,
)

logger = structlog.get_logger().bind(component="container")


@dataclass
class CommerceServices:
    config: CommerceConfig
    orders_repo: IOrderRepository
    inventory: IInventoryLedger
    intents: IPaymentIntentRepository
    refunds: IRefundRepository
    audit_log: IAuditLog
    gateways: Dict[PaymentMethod, PaymentGatewayAdapter]
    pricing: PricingEngine = field(init=False)
    audit: AuditTrail = field(init=False)
    orders: OrderService = field(init=False)
    reconciliation: ReconciliationEngine = field(init=False)
    database: Optional[Database] = None

    def __post_init__(self):
        self.pricing = PricingEngine(self.config)
        self.audit = AuditTrail(self.audit_log)
        self.orders = OrderService(
            self.config,
            self.orders_repo,
            self.inventory,
            self.intents,
            self.pricing,
            self.audit,
        )
        self.reconciliation = ReconciliationEngine(
            self.config,
            self.orders_repo,
            self.intents,
            self.refunds,
            self.gateways,
            self.pricing,
            self.audit,
        )

    async def aclose(self):
        for adapter in self.gateways.values():
            await adapter.aclose()
        if self.database:
            await self.database.close()


def default_gateways(config: CommerceConfig) -> Dict[PaymentMethod, PaymentGatewayAdapter]:
    return {
        PaymentMethod.CARD: StripeGateway(config),
        PaymentMethod.WALLET: PayPalGateway(config),
    }


def build_memory_services(
    config: CommerceConfig,
    gateways: Optional[Dict[PaymentMethod, PaymentGatewayAdapter]] = None,
    inventory: Optional[IInventoryLedger] = None,
) -> CommerceServices:
    return CommerceServices(
        config=config,
        orders_repo=InMemoryOrderRepository(),
        inventory=inventory or InMemoryInventoryLedger(),
        intents=InMemoryPaymentIntentRepository(),
        refunds=InMemoryRefundRepository(),
        audit_log=InMemoryAuditLog(),
        gateways=gateways if gateways is not None else default_gateways(config),
    )


async def build_services(config: CommerceConfig) -> CommerceServices:
    """Open the pool, run migrations and wire the Postgres stores."""
    if config.storage_backend == "memory":
        logger.warning("memory_storage_backend", detail="state is lost on restart")
        return build_memory_services(config)

    db = Database(config)
    await db.connect()
    await db.run_migrations()

    return CommerceServices(
        config=config,
        orders_repo=PostgresOrderRepository(db),
        inventory=PostgresInventoryLedger(db),
        intents=PostgresPaymentIntentRepository(db),
        refunds=PostgresRefundRepository(db),
        audit_log=PostgresAuditLog(db),
        gateways=default_gateways(config),
        database=db,
    )
