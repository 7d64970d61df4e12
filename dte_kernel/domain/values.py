"""
Values -- Immutable, self-validating monetary value objects.

Responsibility:
    Currency and Money types used by the document builder for every amount
    that ends up on a tax document.  Amounts are Decimal-only and rounding
    is explicit: Money never rounds itself.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Amounts are Decimal, never float.
    - Currency codes are restricted to the ones a DTE can carry, each with
      its minor unit (CLP has none, CLF four).
    - Rounding is ROUND_HALF_UP to the currency's minor unit.

Failure modes:
    - ValueError on an unknown currency or an unparseable amount.
    - ValueError when arithmetic mixes currencies.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# ISO 4217 code -> (name, decimal places)
_CURRENCIES: dict[str, tuple[str, int]] = {
    "CLP": ("Peso chileno", 0),
    "CLF": ("Unidad de fomento", 4),
    "USD": ("US Dollar", 2),
    "EUR": ("Euro", 2),
}


@dataclass(frozen=True, slots=True)
class Currency:
    """
    Currency code value object.

    Guarantees:
        - code is uppercase and one of the supported DTE currencies.
    """

    code: str

    def __post_init__(self) -> None:
        normalized = self.code.upper().strip() if self.code else ""
        if normalized not in _CURRENCIES:
            raise ValueError(f"Unsupported currency code: {self.code}")
        object.__setattr__(self, "code", normalized)

    @property
    def decimal_places(self) -> int:
        return _CURRENCIES[self.code][1]

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('1') for CLP."""
        places = self.decimal_places
        return Decimal(1).scaleb(-places) if places else Decimal(1)

    @property
    def name(self) -> str:
        return _CURRENCIES[self.code][0]

    @classmethod
    def is_supported(cls, code: str) -> bool:
        return bool(code) and code.upper().strip() in _CURRENCIES

    def __str__(self) -> str:
        return self.code


@dataclass(frozen=True, slots=True)
class Money:
    """
    Monetary amount value object.

    Contract:
        Pairs a Decimal amount with its Currency.  Arithmetic keeps full
        precision; callers decide when to round (the builder rounds once,
        at the document total level).

    Non-goals:
        - No currency conversion.
        - No implicit rounding.
    """

    amount: Decimal
    currency: Currency

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            if isinstance(self.amount, float):
                raise ValueError(f"Float amounts are not allowed: {self.amount!r}")
            try:
                object.__setattr__(self, "amount", Decimal(str(self.amount)))
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"Invalid amount: {self.amount}") from e
        if isinstance(self.currency, str):
            object.__setattr__(self, "currency", Currency(self.currency))

    @classmethod
    def of(cls, amount: Decimal | str | int, currency: str | Currency) -> Money:
        if isinstance(amount, (str, int)):
            amount = Decimal(str(amount))
        if isinstance(currency, str):
            currency = Currency(currency)
        return cls(amount=amount, currency=currency)

    @classmethod
    def zero(cls, currency: str | Currency) -> Money:
        if isinstance(currency, str):
            currency = Currency(currency)
        return cls(amount=Decimal("0"), currency=currency)

    def round(self, rounding: str = ROUND_HALF_UP) -> Money:
        """Return a new Money rounded to the currency's minor unit."""
        rounded = self.amount.quantize(self.currency.minor_unit, rounding=rounding)
        return Money(amount=rounded, currency=self.currency)

    def _check_currency(self, other: Money, op: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {op} Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __mul__(self, factor: Decimal | int | str) -> Money:
        if isinstance(factor, (int, str)):
            factor = Decimal(str(factor))
        if not isinstance(factor, Decimal):
            return NotImplemented
        return Money(amount=self.amount * factor, currency=self.currency)

    def __rmul__(self, factor: Decimal | int | str) -> Money:
        return self.__mul__(factor)

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.code}"

    def __repr__(self) -> str:
        return f"Money({self.amount!r}, {self.currency.code!r})"
