from fastapi import APIRouter, Depends
from sqlalchemy.orm import sessionmaker

from database.session import get_session_factory
from models.voucher import VoucherCreate
from routes.deps import require_admin_key
from services.vouchers import create_voucher, usage_summary

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


@router.post("/vouchers", status_code=201)
def add_voucher(
    request: VoucherCreate,
    factory: sessionmaker = Depends(get_session_factory),
):
    voucher = create_voucher(factory, request)
    return {"success": True, "data": voucher.model_dump(mode="json")}


@router.get("/vouchers/{voucher_id}/usage")
def voucher_usage(
    voucher_id: str,
    factory: sessionmaker = Depends(get_session_factory),
):
    summary = usage_summary(factory, voucher_id)
    return {"success": True, "data": summary.model_dump(mode="json")}
