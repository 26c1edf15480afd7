"""API routers."""

from marionette.api.routes.accounts import router as accounts_router
from marionette.api.routes.admin import router as admin_router
from marionette.api.routes.client import router as client_router
from marionette.api.routes.clients import router as clients_router
from marionette.api.routes.jobs import router as jobs_router
from marionette.api.routes.reports import router as reports_router

ALL_ROUTERS = [
    jobs_router,
    clients_router,
    client_router,
    accounts_router,
    reports_router,
    admin_router,
]

__all__ = ["ALL_ROUTERS"]
