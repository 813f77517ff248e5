from pydantic import BaseModel, EmailStr
from typing import Optional, List, Union
from datetime import datetime

# ============================================
# LINE ITEMS
# ============================================
# Only the calculator inputs are declared; derived amounts sent by a client
# are accepted and then overwritten by the engine.

class LineItem(BaseModel):
    description: Optional[str] = None
    product_id: Optional[str] = None
    quantity: float
    unit_price: float
    discount: float = 0
    tax_rate: float = 0

    class Config:
        extra = "allow"

class ServiceCharge(LineItem):
    pass

class BatteryBuyBack(LineItem):
    pass

class OfferItem(BaseModel):
    description: Optional[str] = None
    qty: float
    amc_cost_per_dg: float

    class Config:
        extra = "allow"

# ============================================
# BILLING DOCUMENTS
# ============================================

class DocumentCreate(BaseModel):
    items: Optional[List[LineItem]] = None
    offer_items: Optional[List[OfferItem]] = None
    service_charges: Optional[List[ServiceCharge]] = None
    battery_buy_back: Optional[BatteryBuyBack] = None
    overall_discount: float = 0
    gst_included: Optional[bool] = None
    inter_state: Optional[bool] = None
    paid_amount: float = 0
    due_date: Optional[datetime] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None
    customer_address: Optional[str] = None
    po_number: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None

class DocumentUpdate(BaseModel):
    items: Optional[List[LineItem]] = None
    offer_items: Optional[List[OfferItem]] = None
    service_charges: Optional[List[ServiceCharge]] = None
    battery_buy_back: Optional[BatteryBuyBack] = None
    overall_discount: Optional[float] = None
    gst_included: Optional[bool] = None
    inter_state: Optional[bool] = None
    due_date: Optional[datetime] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None
    customer_address: Optional[str] = None
    po_number: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None

class StatusChange(BaseModel):
    status: str

# ============================================
# PAYMENTS
# ============================================

class PaymentCreate(BaseModel):
    amount: float
    payment_method: str = "cash"  # cash, bank_transfer, cheque, upi, online
    notes: Optional[str] = None
    operation_id: Optional[str] = None

class SendPaymentLink(BaseModel):
    to_address: Optional[EmailStr] = None
    base_url: Optional[str] = None

class LinkPayment(BaseModel):
    amount: float
    payment_method: str = "online"
    payer: Optional[str] = None

# ============================================
# ADMIN
# ============================================

class PolicyUpdate(BaseModel):
    key: str
    value: Union[bool, int, float]

class JobRequest(BaseModel):
    job_type: str  # TOKEN_CLEANUP, OVERDUE_SWEEP, LEDGER_INTEGRITY
