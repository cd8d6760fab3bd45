"""Typed callback bodies, one model per provider callback type."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payrelay.common.errors import CallbackParseError


class ProviderModel(BaseModel):
    """Provider payloads use PascalCase keys; fields are exposed in snake_case."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CallbackItem(ProviderModel):
    name: str = Field(alias="Name")
    value: str | int | float | None = Field(default=None, alias="Value")


class CallbackMetadata(ProviderModel):
    items: list[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallbackResult(ProviderModel):
    merchant_request_id: str = Field(alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(alias="ResultDesc")
    callback_metadata: CallbackMetadata | None = Field(default=None, alias="CallbackMetadata")

    def metadata(self) -> dict[str, Any]:
        if self.callback_metadata is None:
            return {}
        return {item.name: item.value for item in self.callback_metadata.items}


class StkCallbackBody(ProviderModel):
    stk_callback: StkCallbackResult = Field(alias="stkCallback")


class StkCallback(ProviderModel):
    body: StkCallbackBody = Field(alias="Body")

    @property
    def result(self) -> StkCallbackResult:
        return self.body.stk_callback


class C2BValidationCallback(ProviderModel):
    transaction_type: str = Field(default="", alias="TransactionType")
    trans_id: str = Field(alias="TransID")
    trans_time: str = Field(default="", alias="TransTime")
    trans_amount: Decimal = Field(alias="TransAmount")
    business_short_code: str = Field(default="", alias="BusinessShortCode")
    bill_ref_number: str = Field(default="", alias="BillRefNumber")
    invoice_number: str = Field(default="", alias="InvoiceNumber")
    org_account_balance: str = Field(default="", alias="OrgAccountBalance")
    third_party_trans_id: str = Field(default="", alias="ThirdPartyTransID")
    msisdn: str = Field(default="", alias="MSISDN")
    first_name: str = Field(default="", alias="FirstName")
    middle_name: str = Field(default="", alias="MiddleName")
    last_name: str = Field(default="", alias="LastName")

    @property
    def payer_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.middle_name, self.last_name) if part)


class C2BConfirmationCallback(C2BValidationCallback):
    pass


class ResultParameter(ProviderModel):
    key: str = Field(alias="Key")
    value: str | int | float | None = Field(default=None, alias="Value")


class ResultParameters(ProviderModel):
    items: list[ResultParameter] = Field(default_factory=list, alias="ResultParameter")


class B2CResult(ProviderModel):
    result_type: int = Field(default=0, alias="ResultType")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    originator_conversation_id: str | None = Field(default=None, alias="OriginatorConversationID")
    conversation_id: str | None = Field(default=None, alias="ConversationID")
    transaction_id: str | None = Field(default=None, alias="TransactionID")
    result_parameters: ResultParameters | None = Field(default=None, alias="ResultParameters")

    def parameters(self) -> dict[str, Any]:
        if self.result_parameters is None:
            return {}
        return {item.key: item.value for item in self.result_parameters.items}


class B2CResultCallback(ProviderModel):
    result: B2CResult = Field(alias="Result")


class B2CTimeoutResult(ProviderModel):
    originator_conversation_id: str | None = Field(default=None, alias="OriginatorConversationID")
    conversation_id: str | None = Field(default=None, alias="ConversationID")


class B2CTimeoutCallback(ProviderModel):
    result: B2CTimeoutResult | None = Field(default=None, alias="Result")


CALLBACK_MODELS: dict[str, type[ProviderModel]] = {
    "STK": StkCallback,
    "C2B_VALIDATION": C2BValidationCallback,
    "C2B_CONFIRMATION": C2BConfirmationCallback,
    "B2C_RESULT": B2CResultCallback,
    "B2C_TIMEOUT": B2CTimeoutCallback,
}


def parse_callback(callback_type: str, body: Any) -> ProviderModel:
    """Validate `body` against the schema registered for `callback_type`."""

    model = CALLBACK_MODELS.get(callback_type)
    if model is None:
        raise CallbackParseError(f"unknown callback type {callback_type}")
    if not isinstance(body, dict):
        raise CallbackParseError(f"{callback_type} callback body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise CallbackParseError(f"invalid {callback_type} callback: {exc.errors(include_url=False)}") from exc
