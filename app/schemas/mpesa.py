"""M-Pesa (Daraja) STK push schemas."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GatewayResponse(BaseModel):
    """Synchronous acknowledgement of an STK push request."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    merchant_request_id: str | None = Field(None, alias="MerchantRequestID")
    checkout_request_id: str | None = Field(None, alias="CheckoutRequestID")
    response_code: str | None = Field(None, alias="ResponseCode")
    response_description: str | None = Field(None, alias="ResponseDescription")
    customer_message: str | None = Field(None, alias="CustomerMessage")

    @field_validator(
        "merchant_request_id",
        "checkout_request_id",
        "response_code",
        "response_description",
        "customer_message",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, v: Any) -> str | None:
        """Daraja sometimes sends codes as numbers."""
        return None if v is None else str(v)

    @property
    def accepted(self) -> bool:
        """The gateway queued the prompt on the customer's handset."""
        return self.response_code == "0"

    def details(self) -> dict[str, Any]:
        """Payload returned to the booking client."""
        return self.model_dump(by_alias=True, exclude_none=True)


class CallbackMetadataItem(BaseModel):
    """One ``{Name, Value}`` pair of ``CallbackMetadata.Item``."""

    name: str = Field(..., alias="Name")
    value: Any = Field(None, alias="Value")


class CallbackMetadata(BaseModel):
    """Result values attached to a successful callback."""

    items: list[CallbackMetadataItem] = Field(default_factory=list, alias="Item")

    def get(self, name: str) -> Any:
        """Value of the first item called ``name``."""
        for item in self.items:
            if item.name == name:
                return item.value
        return None


class StkCallback(BaseModel):
    """
    ``Body.stkCallback`` of an STK push result notification.

    Result values are read from ``CallbackMetadata`` and, for payloads
    relayed in the flat form, from the top-level fields.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    merchant_request_id: str | None = Field(None, alias="MerchantRequestID")
    checkout_request_id: str | None = Field(None, alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: str | None = Field(None, alias="ResultDesc")
    callback_metadata: CallbackMetadata | None = Field(None, alias="CallbackMetadata")
    amount: Any = Field(None, alias="Amount")
    mpesa_receipt_number: Any = Field(None, alias="MpesaReceiptNumber")
    transaction_date: Any = Field(None, alias="TransactionDate")
    phone_number: Any = Field(None, alias="PhoneNumber")
    account_reference: Any = Field(None, alias="AccountReference")

    def value(self, name: str) -> Any:
        """Look a result value up in the flat fields, then in the metadata."""
        flat = {
            "Amount": self.amount,
            "MpesaReceiptNumber": self.mpesa_receipt_number,
            "TransactionDate": self.transaction_date,
            "PhoneNumber": self.phone_number,
            "AccountReference": self.account_reference,
        }.get(name)
        if flat not in (None, ""):
            return flat
        if self.callback_metadata is not None:
            return self.callback_metadata.get(name)
        return None


class CallbackBody(BaseModel):
    """``Body`` envelope of the callback."""

    stk_callback: StkCallback = Field(..., alias="stkCallback")


class CallbackPayload(BaseModel):
    """Top-level callback document posted by the gateway."""

    body: CallbackBody = Field(..., alias="Body")


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    result_code: int = Field(..., serialization_alias="ResultCode")
    result_desc: str = Field(..., serialization_alias="ResultDesc")
