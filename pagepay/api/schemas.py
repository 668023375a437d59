from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class PaymentRequest(BaseModel):
    # Field rules are checked by the order validator, which reports all violations.
    model_config = ConfigDict(populate_by_name=True)

    out_trade_no: Optional[str] = Field(default=None, alias="outTradeNo")
    subject: Optional[str] = None
    total_amount: Optional[Union[str, int, float]] = Field(default=None, alias="totalAmount")
    body: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str
