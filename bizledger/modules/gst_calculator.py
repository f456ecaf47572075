from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Union, Any
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from bizledger.modules.errors import InvalidAmount

DEFAULT_GST_RATE = Decimal("0.10")
CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, int, float, str]

# ==========================================
# HELPERS
# ==========================================


def to_dec(v):
    if v is None:
        return Decimal("0.00")
    if isinstance(v, bool):
        raise InvalidAmount(v, "booleans are not amounts")
    try:
        if isinstance(v, (int, float, Decimal)):
            return Decimal(str(v))
        return Decimal(str(v).replace(",", ""))
    except InvalidOperation:
        raise InvalidAmount(v, "not a number")


def round2(v) -> Decimal:
    return to_dec(v).quantize(CENT, rounding=ROUND_HALF_UP)


def is_zero(v, epsilon: Decimal = CENT) -> bool:
    """True when the amount is within rounding distance of zero."""
    return abs(to_dec(v)) < epsilon


def format_currency(value):
    try:
        val = to_dec(value)
        return "${:,.2f}".format(val)
    except (ValueError, TypeError, ArithmeticError):
        return str(value)


def _checked(value: Amount) -> Decimal:
    amount = to_dec(value)
    if not amount.is_finite():
        raise InvalidAmount(value, "must be finite")
    if amount < 0:
        raise InvalidAmount(value, "must not be negative")
    return amount


def _cents(value: Amount) -> Decimal:
    return round2(_checked(value))


def _checked_rate(rate) -> Decimal:
    r = to_dec(DEFAULT_GST_RATE if rate is None else rate)
    if not r.is_finite() or r < 0:
        raise ValueError(f"Invalid GST rate: {rate!r}")
    return r


# ==========================================
# MONETARY LINE
# ==========================================


class MonetaryLine(BaseModel):
    """An amount split into its GST-exclusive, GST and GST-inclusive parts."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    amount_excl_gst: Decimal = ZERO
    amount_gst: Decimal = ZERO
    amount_incl_gst: Decimal = ZERO
    is_gst_free: bool = False

    @field_validator('amount_excl_gst', 'amount_gst', 'amount_incl_gst', mode='before')
    @classmethod
    def parse_currency(cls, v):
        if v is None: return ZERO
        return round2(v)

    @model_validator(mode='after')
    def check_invariant(self) -> 'MonetaryLine':
        if self.amount_incl_gst != self.amount_excl_gst + self.amount_gst:
            raise ValueError(
                f"amount_incl_gst {self.amount_incl_gst} != "
                f"{self.amount_excl_gst} + {self.amount_gst}"
            )
        if self.is_gst_free and self.amount_gst != 0:
            raise ValueError("GST-free line cannot carry GST")
        return self

    @classmethod
    def zero(cls) -> 'MonetaryLine':
        return cls(is_gst_free=True)

    def __add__(self, other: 'MonetaryLine') -> 'MonetaryLine':
        return MonetaryLine(
            amount_excl_gst=self.amount_excl_gst + other.amount_excl_gst,
            amount_gst=self.amount_gst + other.amount_gst,
            amount_incl_gst=self.amount_incl_gst + other.amount_incl_gst,
            is_gst_free=self.is_gst_free and other.is_gst_free,
        )


# ==========================================
# CONVERSIONS
# ==========================================


def from_excl_gst(excl: Amount, is_gst_free: bool = False, rate: Amount = DEFAULT_GST_RATE) -> MonetaryLine:
    """GST and the inclusive total are rounded from the exact exclusive amount;
    the exclusive field is then their difference, so the line always balances."""
    excl_dec = _checked(excl)
    r = _checked_rate(rate)
    free = is_gst_free or round2(excl_dec) == 0
    if free:
        return MonetaryLine(
            amount_excl_gst=round2(excl_dec),
            amount_gst=ZERO,
            amount_incl_gst=round2(excl_dec),
            is_gst_free=True,
        )
    gst = round2(excl_dec * r)
    incl = round2(excl_dec * (1 + r))
    return MonetaryLine(
        amount_excl_gst=incl - gst,
        amount_gst=gst,
        amount_incl_gst=incl,
    )


def from_incl_gst(incl: Amount, is_gst_free: bool = False, rate: Amount = DEFAULT_GST_RATE) -> MonetaryLine:
    incl_dec = _checked(incl)
    r = _checked_rate(rate)
    incl_cents = round2(incl_dec)
    free = is_gst_free or incl_cents == 0
    excl = incl_cents if free else round2(incl_dec / (1 + r))
    return MonetaryLine(
        amount_excl_gst=excl,
        amount_gst=incl_cents - excl,
        amount_incl_gst=incl_cents,
        is_gst_free=free,
    )


def normalize(
    excl: Optional[Amount] = None,
    gst: Optional[Amount] = None,
    incl: Optional[Amount] = None,
    is_gst_free: bool = False,
    rate: Amount = DEFAULT_GST_RATE,
) -> MonetaryLine:
    """Builds a consistent line from whichever fields a record was persisted with.

    Two known fields are kept as-is and the third is their sum/difference;
    a single known field goes through from_excl_gst/from_incl_gst.
    """
    if excl is not None and incl is not None:
        excl_dec, incl_dec = _cents(excl), _cents(incl)
        if is_gst_free or incl_dec == 0:
            return from_incl_gst(incl_dec, True, rate)
        if incl_dec < excl_dec:
            raise InvalidAmount(incl, f"inclusive amount is below exclusive amount {excl_dec}")
        return MonetaryLine(
            amount_excl_gst=excl_dec,
            amount_gst=incl_dec - excl_dec,
            amount_incl_gst=incl_dec,
        )
    if excl is not None and gst is not None:
        excl_dec, gst_dec = _cents(excl), _cents(gst)
        if is_gst_free or gst_dec == 0:
            return from_excl_gst(excl_dec, True, rate)
        return MonetaryLine(
            amount_excl_gst=excl_dec,
            amount_gst=gst_dec,
            amount_incl_gst=excl_dec + gst_dec,
        )
    if incl is not None and gst is not None:
        incl_dec, gst_dec = _cents(incl), _cents(gst)
        if gst_dec > incl_dec:
            raise InvalidAmount(gst, f"GST exceeds inclusive amount {incl_dec}")
        if is_gst_free or gst_dec == 0:
            return from_incl_gst(incl_dec, True, rate)
        return MonetaryLine(
            amount_excl_gst=incl_dec - gst_dec,
            amount_gst=gst_dec,
            amount_incl_gst=incl_dec,
        )
    if incl is not None:
        return from_incl_gst(incl, is_gst_free, rate)
    if excl is not None:
        return from_excl_gst(excl, is_gst_free, rate)
    if gst is not None:
        gst_dec = _cents(gst)
        if gst_dec == 0:
            return MonetaryLine.zero()
        # GST alone implies the exclusive base at the configured rate
        r = _checked_rate(rate)
        if r == 0:
            raise InvalidAmount(gst, "GST given with a zero rate")
        excl_dec = round2(gst_dec / r)
        return MonetaryLine(
            amount_excl_gst=excl_dec,
            amount_gst=gst_dec,
            amount_incl_gst=excl_dec + gst_dec,
        )
    return MonetaryLine.zero()


class GstCalculator:
    """The conversions above bound to one configured GST rate and money epsilon."""

    def __init__(self, rate: Amount = DEFAULT_GST_RATE, epsilon: Amount = CENT):
        self.rate = _checked_rate(rate)
        self.epsilon = to_dec(epsilon)

    @classmethod
    def from_config(cls, config: Any) -> 'GstCalculator':
        tax_rules = config.business_rules.tax_rules
        return cls(tax_rules.gst_rate, tax_rules.money_epsilon)

    def from_excl_gst(self, excl: Amount, is_gst_free: bool = False) -> MonetaryLine:
        return from_excl_gst(excl, is_gst_free, self.rate)

    def from_incl_gst(self, incl: Amount, is_gst_free: bool = False) -> MonetaryLine:
        return from_incl_gst(incl, is_gst_free, self.rate)

    def normalize(self, excl=None, gst=None, incl=None, is_gst_free: bool = False) -> MonetaryLine:
        return normalize(excl, gst, incl, is_gst_free, self.rate)
