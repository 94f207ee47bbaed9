"""Purchase payloads handed to ledger staging."""
from datetime import date
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field


class MembershipPurchase(BaseModel):
    """A membership bought for a number of months."""
    product_type: Literal["membership"] = "membership"
    membership_id: UUID
    user_membership_id: Optional[UUID] = None
    name: str
    duration_months: int = Field(gt=0)
    amount: int = Field(ge=0)  # cents, before discounts
    accounting_code: Optional[str] = None

    @property
    def item_id(self) -> UUID:
        return self.membership_id

    @property
    def description(self) -> str:
        return f"Membership: {self.name} - {self.duration_months} months"


class RegistrationPurchase(BaseModel):
    """A seat in a registration category."""
    product_type: Literal["registration"] = "registration"
    registration_id: UUID
    category_id: UUID
    reservation_id: Optional[UUID] = None
    registration_name: str
    category_name: str
    season_name: Optional[str] = None
    amount: int = Field(ge=0)  # cents, before discounts
    accounting_code: Optional[str] = None

    @property
    def item_id(self) -> UUID:
        return self.registration_id

    @property
    def description(self) -> str:
        return f"Registration: {self.registration_name} - {self.category_name}"


Purchase = Annotated[
    Union[MembershipPurchase, RegistrationPurchase],
    Field(discriminator="product_type"),
]


class DiscountApplication(BaseModel):
    """A discount code applied to the purchase."""
    discount_code_id: UUID
    code: str
    amount_saved: int = Field(gt=0)  # cents
    accounting_code: Optional[str] = None


class DonationLine(BaseModel):
    amount: int = Field(gt=0)
    description: str = "Donation"
    accounting_code: Optional[str] = None


class PaymentPlanTerms(BaseModel):
    installments: int = Field(ge=2, le=12)
    interval_days: int = Field(default=30, gt=0)
    first_installment_date: Optional[date] = None


class StagingPayload(BaseModel):
    """Everything the ledger needs to know about one purchase."""
    user_id: UUID
    purchase: Purchase
    discounts: list[DiscountApplication] = Field(default_factory=list)
    donation: Optional[DonationLine] = None
    payment_plan: Optional[PaymentPlanTerms] = None
    charge_id: Optional[str] = None

    @property
    def total_amount(self) -> int:
        donation = self.donation.amount if self.donation else 0
        return self.purchase.amount + donation

    @property
    def discount_amount(self) -> int:
        # A discount never takes the product line below zero
        return min(sum(d.amount_saved for d in self.discounts), self.purchase.amount)

    @property
    def net_amount(self) -> int:
        return self.total_amount - self.discount_amount

    @property
    def is_free(self) -> bool:
        return self.net_amount == 0
