from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=8, max_length=20, description="WhatsApp number")
    email: Optional[EmailStr] = None


class VerifyOtpRequest(BaseModel):
    phone: str = Field(..., min_length=8, max_length=20)
    otp: str = Field(..., min_length=6, max_length=6)


class AccountResponse(BaseModel):
    success: bool
    message: str
    user_id: Optional[str] = None
    next_step: Optional[str] = None
