# fieldsync/routers/session.py
from fastapi import APIRouter, Depends, Request

from ..schemas import LoginIn

router = APIRouter(prefix="/api/session", tags=["Session"])


def get_services(request: Request):
    return request.app.state.services


@router.post("/login")
def login(payload: LoginIn, services=Depends(get_services)):
    with services.lock:
        report = services.reconciler.login(payload.owner_id, payload.access_token)
    return {
        "owner_id": report.owner_id,
        "migrated": report.migration.migrated,
        "migration_failed": report.migration.failed,
        "source": report.listing.source,
        "datasets": len(report.listing.datasets),
        "error": report.listing.error,
    }


@router.post("/logout")
def logout(services=Depends(get_services)):
    with services.lock:
        services.reconciler.logout()
    return {"status": "signed out"}


@router.get("")
def current(services=Depends(get_services)):
    context = services.context
    return {"authenticated": context.authenticated, "owner_id": context.owner_id}
