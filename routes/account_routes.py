from fastapi import APIRouter, Depends

from models.account import AccountResponse, RegisterRequest, VerifyOtpRequest
from routes.deps import get_account_service
from services.accounts import AccountService

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=AccountResponse, status_code=201)
async def register(
    request: RegisterRequest,
    accounts: AccountService = Depends(get_account_service),
):
    """
    Register a customer and send the WhatsApp OTP

    When the OTP cannot be delivered the account is removed again and the
    response carries the delivery error code (WHATSAPP_TIMEOUT, ...).
    """
    user_id = await accounts.register(request.name, request.phone, request.email)
    return AccountResponse(
        success=True,
        message="Account created. Check WhatsApp for your verification code.",
        user_id=user_id,
        next_step="verify-otp",
    )


@router.post("/verify-otp", response_model=AccountResponse)
def verify_otp(
    request: VerifyOtpRequest,
    accounts: AccountService = Depends(get_account_service),
):
    user_id = accounts.verify_otp(request.phone, request.otp)
    return AccountResponse(success=True, message="Phone number verified", user_id=user_id)
