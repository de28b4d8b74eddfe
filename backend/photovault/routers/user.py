"""User routes: account deletion."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from photovault.core.auth import get_current_user
from photovault.dependencies import client_ip, get_db, get_payments, get_storage
from photovault.models.user import User
from photovault.services import delete_service
from photovault.services.payments import PaymentProvider
from photovault.services.storage import ArchiveStorage

router = APIRouter(prefix="/user", tags=["user"])


@router.delete("/delete", status_code=204)
async def delete_account(
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: ArchiveStorage = Depends(get_storage),
    payments: PaymentProvider = Depends(get_payments),
    current_user: User = Depends(get_current_user),
):
    """Cancel billing, remove every stored file, and delete the account."""
    await delete_service.delete_account(
        db,
        storage,
        current_user.id,
        payments=payments,
        ip_address=client_ip(request),
    )
    await db.commit()
