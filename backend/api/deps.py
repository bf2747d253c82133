"""
Request-scoped access to the services built by the entry point.

create_app() constructs one store and one set of services and parks them
on app.state; routes reach them through these dependencies.
"""
from fastapi import Request

from backend.features.billing.service import BillingService
from backend.features.plans.service import PlanCatalog
from backend.features.subscriptions.persistence import SubscriptionStore
from backend.features.subscriptions.service import SubscriptionService
from backend.features.usage.service import UsageService


def get_store(request: Request) -> SubscriptionStore:
    return request.app.state.store


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.catalog


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.subscriptions


def get_usage_service(request: Request) -> UsageService:
    return request.app.state.usage


def get_billing_service(request: Request) -> BillingService:
    return request.app.state.billing
