"""API request payloads for outbound provider operations."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """Accepts the camelCase keys dashboard clients send."""

    model_config = ConfigDict(populate_by_name=True)


class StkPushRequest(ApiModel):
    phone_number: str = Field(alias="phoneNumber", min_length=9, max_length=15, pattern=r"^[\d+]+$")
    amount: float = Field(ge=1, le=150_000)
    account_reference: str = Field(alias="accountReference", min_length=1, max_length=12)
    transaction_desc: str | None = Field(default=None, alias="transactionDesc", max_length=13)


class StkQueryRequest(ApiModel):
    checkout_request_id: str = Field(alias="checkoutRequestId", min_length=1)


class C2BRegisterRequest(ApiModel):
    response_type: Literal["Completed", "Cancelled"] = Field(default="Completed", alias="responseType")


class C2BSimulateRequest(ApiModel):
    amount: float = Field(ge=1, le=150_000)
    msisdn: str = Field(min_length=9, max_length=15, pattern=r"^[\d+]+$")
    bill_ref_number: str | None = Field(default=None, alias="billRefNumber", max_length=20)
    command_id: Literal["CustomerPayBillOnline", "CustomerBuyGoodsOnline"] = Field(
        default="CustomerPayBillOnline", alias="commandID"
    )


class B2CPaymentRequest(ApiModel):
    amount: float = Field(ge=1, le=150_000)
    phone_number: str = Field(alias="phoneNumber", min_length=9, max_length=15, pattern=r"^[\d+]+$")
    remarks: str = Field(min_length=1, max_length=100)
    occasion: str = Field(default="", max_length=100)
    command_id: Literal["BusinessPayment", "SalaryPayment", "PromotionPayment"] = Field(
        default="BusinessPayment", alias="commandID"
    )
