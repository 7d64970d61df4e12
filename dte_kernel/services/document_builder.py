"""
DocumentBuilder -- SourceRecord to draft TaxDocument.

Responsibility:
    Validates a fully-priced business record and turns it into a transient
    TaxDocument in DRAFT, with line items, references, and totals computed
    under a single rounding rule.

Architecture position:
    Kernel > Services.  Pure: no session, no clock, no I/O.  The draft is
    persisted by the caller in the same transaction that assigns its folio,
    so abandoning a draft costs nothing.

Invariants enforced:
    - Every violated constraint is reported in one InvalidDocumentError.
    - Line totals are quantity * unit_price at full precision.
    - Totals are rounded ROUND_HALF_UP to the currency minor unit exactly
      once, at the document level:
          net    = round(sum(taxed line totals))
          exempt = round(sum(exempt line totals))
          tax    = round(sum(taxed line totals) * vat_rate)
          total  = net + exempt + tax
    - Text that ends up on the document is ISO-8859-1 encodable, because
      that is the encoding the authority hashes for the TED stamp.

Failure modes:
    - InvalidDocumentError listing all violations.
"""

from decimal import Decimal, InvalidOperation
from uuid import uuid4

from dte_kernel.domain import rut
from dte_kernel.domain.document_types import VAT_RATE, DocumentType, TaxTreatment
from dte_kernel.domain.dtos import LineSpec, ReferenceSpec, SourceRecord
from dte_kernel.domain.values import Currency, Money
from dte_kernel.exceptions import InvalidDocumentError
from dte_kernel.logging_config import get_logger
from dte_kernel.models.tax_document import (
    TaxDocument,
    TaxDocumentLine,
    TaxDocumentReference,
    TaxDocumentStatus,
)

logger = get_logger("services.document_builder")

MAX_LINES = 60
MAX_REFERENCES = 40
MAX_DECIMAL_PLACES = 6

# Receiver name printed on receipts issued without an identified buyer
FINAL_CONSUMER_NAME = "Consumidor final"

PAYMENT_METHODS = frozenset({1, 2, 3})
REFERENCE_CODES = frozenset({1, 2, 3})


class _Violations:
    """Collects constraint violations as 'field: message' strings."""

    def __init__(self) -> None:
        self.items: list[str] = []

    def add(self, field: str, message: str) -> None:
        self.items.append(f"{field}: {message}")

    def text(
        self,
        field: str,
        value: str | None,
        max_length: int,
        *,
        required: bool = True,
    ) -> None:
        if value is None or not str(value).strip():
            if required:
                self.add(field, "is required")
            return
        if len(value) > max_length:
            self.add(field, f"exceeds {max_length} characters")
        try:
            value.encode("iso-8859-1")
        except UnicodeEncodeError:
            self.add(field, "contains characters outside ISO-8859-1")

    def rut(self, field: str, value: str | None, *, required: bool = True) -> None:
        if not value:
            if required:
                self.add(field, "is required")
            return
        if not rut.is_valid(value):
            self.add(field, f"{value!r} is not a valid RUT")


def _as_decimal(violations: _Violations, field: str, value) -> Decimal | None:
    if isinstance(value, float):
        violations.add(field, "must be a Decimal, not float")
        return None
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        violations.add(field, f"{value!r} is not a number")
        return None
    if not number.is_finite():
        violations.add(field, "must be finite")
        return None
    if number.as_tuple().exponent < -MAX_DECIMAL_PLACES:
        violations.add(field, f"has more than {MAX_DECIMAL_PLACES} decimal places")
    return number


class DocumentBuilder:
    """
    Builds draft documents.

    Args:
        vat_rate: Rate for types whose behavior charges VAT.  Defaults to
            the statutory rate.
    """

    def __init__(self, vat_rate: Decimal = VAT_RATE):
        self._vat_rate = vat_rate

    def build(self, source: SourceRecord) -> TaxDocument:
        """
        Validate source and produce a transient DRAFT TaxDocument.

        Raises:
            InvalidDocumentError: With every violation found.
        """
        violations = _Violations()

        if not source.tenant_id or not str(source.tenant_id).strip():
            violations.add("tenant_id", "is required")

        doc_type: DocumentType | None
        try:
            doc_type = DocumentType.parse(source.document_type)
        except ValueError:
            doc_type = None
            violations.add("document_type", f"{source.document_type!r} is not a supported type")
        behavior = doc_type.behavior if doc_type is not None else None

        currency: Currency | None = None
        if Currency.is_supported(source.currency):
            currency = Currency(source.currency)
        else:
            violations.add("currency", f"{source.currency!r} is not supported")

        if source.issue_date is None:
            violations.add("issue_date", "is required")

        issuer = source.issuer
        violations.rut("issuer.rut", issuer.rut)
        violations.text("issuer.legal_name", issuer.legal_name, 100)
        violations.text("issuer.activity", issuer.activity, 80)
        violations.text("issuer.address", issuer.address, 70)
        violations.text("issuer.commune", issuer.commune, 20)
        # FchResol / NroResol go on the Caratula of every submission
        if issuer.resolution_date is None:
            violations.add("issuer.resolution_date", "is required")
        if issuer.resolution_number is None or issuer.resolution_number < 0:
            violations.add("issuer.resolution_number", "must be zero or a positive number")

        counterparty = source.counterparty
        receiver_rut = counterparty.rut
        receiver_name = counterparty.legal_name
        if behavior is not None and behavior.is_receipt:
            receiver_rut = receiver_rut or rut.FINAL_CONSUMER_RUT
            receiver_name = receiver_name or FINAL_CONSUMER_NAME
        violations.rut("counterparty.rut", receiver_rut)
        violations.text("counterparty.legal_name", receiver_name, 100)
        violations.text("counterparty.activity", counterparty.activity, 40, required=False)
        violations.text("counterparty.address", counterparty.address, 70, required=False)
        violations.text("counterparty.commune", counterparty.commune, 20, required=False)

        if source.payment_method is not None and source.payment_method not in PAYMENT_METHODS:
            violations.add("payment_method", f"{source.payment_method!r} must be 1, 2 or 3")
        if source.due_date is not None and source.issue_date is not None and source.due_date < source.issue_date:
            violations.add("due_date", "is before issue_date")

        lines = self._build_lines(violations, source.lines, behavior)
        references = self._build_references(violations, source.references, behavior)

        if violations.items:
            logger.info(
                "document_validation_failed",
                extra={
                    "tenant_id": source.tenant_id,
                    "document_type": str(source.document_type),
                    "violation_count": len(violations.items),
                    "violations": violations.items,
                },
            )
            raise InvalidDocumentError(
                violations.items,
                document_type=str(int(doc_type)) if doc_type is not None else str(source.document_type),
            )

        vat_rate = self._vat_rate if behavior.vat_rate > 0 else Decimal("0")
        net, exempt, tax, total = self._totals(lines, vat_rate, currency)

        document = TaxDocument(
            id=uuid4(),
            tenant_id=source.tenant_id,
            document_type=int(doc_type),
            folio=None,
            issue_date=source.issue_date,
            currency=currency.code,
            issuer_rut=rut.normalize(issuer.rut),
            issuer_name=issuer.legal_name.strip(),
            issuer_activity=issuer.activity.strip(),
            issuer_activity_code=issuer.activity_code,
            issuer_address=issuer.address.strip(),
            issuer_commune=issuer.commune.strip(),
            issuer_branch_code=issuer.branch_code,
            receiver_rut=rut.normalize(receiver_rut),
            receiver_name=receiver_name.strip(),
            receiver_activity=_clean(counterparty.activity),
            receiver_address=_clean(counterparty.address),
            receiver_commune=_clean(counterparty.commune),
            payment_method=source.payment_method,
            due_date=source.due_date,
            net_amount=net,
            exempt_amount=exempt,
            vat_rate=vat_rate,
            tax_amount=tax,
            total_amount=total,
            status=TaxDocumentStatus.DRAFT,
            external_reference=source.external_reference,
        )
        document.lines = lines
        document.references = references

        logger.debug(
            "document_built",
            extra={
                "tenant_id": source.tenant_id,
                "document_id": str(document.id),
                "document_type": int(doc_type),
                "line_count": len(lines),
                "total_amount": total,
            },
        )
        return document

    # ------------------------------------------------------------------

    def _build_lines(self, violations, specs: tuple[LineSpec, ...], behavior) -> list[TaxDocumentLine]:
        if not specs:
            violations.add("lines", "at least one line item is required")
            return []
        if len(specs) > MAX_LINES:
            violations.add("lines", f"at most {MAX_LINES} line items are allowed")

        lines = []
        for index, spec in enumerate(specs):
            field = f"lines[{index}]"
            violations.text(f"{field}.description", spec.description, 80)
            violations.text(f"{field}.detail", spec.detail, 1000, required=False)
            violations.text(f"{field}.unit", spec.unit, 4, required=False)

            quantity = _as_decimal(violations, f"{field}.quantity", spec.quantity)
            if quantity is not None and quantity <= 0:
                violations.add(f"{field}.quantity", "must be positive")
            unit_price = _as_decimal(violations, f"{field}.unit_price", spec.unit_price)
            if unit_price is not None and unit_price < 0:
                violations.add(f"{field}.unit_price", "must not be negative")

            treatment = spec.tax_treatment
            if not isinstance(treatment, TaxTreatment):
                try:
                    treatment = TaxTreatment(treatment)
                except ValueError:
                    violations.add(f"{field}.tax_treatment", f"{spec.tax_treatment!r} is not taxed or exempt")
                    continue
            if behavior is not None and behavior.exempt_only and treatment != TaxTreatment.EXEMPT:
                violations.add(f"{field}.tax_treatment", f"{behavior.name} accepts exempt lines only")

            if quantity is None or unit_price is None:
                continue
            lines.append(
                TaxDocumentLine(
                    line_number=index + 1,
                    description=(spec.description or "").strip(),
                    detail=_clean(spec.detail),
                    quantity=quantity,
                    unit=_clean(spec.unit),
                    unit_price=unit_price,
                    tax_treatment=treatment,
                    line_total=quantity * unit_price,
                )
            )
        return lines

    def _build_references(
        self, violations, specs: tuple[ReferenceSpec, ...], behavior,
    ) -> list[TaxDocumentReference]:
        if behavior is not None and behavior.requires_reference and not specs:
            violations.add("references", f"{behavior.name} must reference a prior document")
        if len(specs) > MAX_REFERENCES:
            violations.add("references", f"at most {MAX_REFERENCES} references are allowed")

        references = []
        for index, spec in enumerate(specs):
            field = f"references[{index}]"
            violations.text(f"{field}.reason", spec.reason, 90)
            if spec.folio is None or spec.folio < 1:
                violations.add(f"{field}.folio", "must be a positive folio")
            if spec.document_date is None:
                violations.add(f"{field}.document_date", "is required")
            if spec.reference_code is not None and spec.reference_code not in REFERENCE_CODES:
                violations.add(f"{field}.reference_code", f"{spec.reference_code!r} must be 1, 2 or 3")
            try:
                referenced_type = int(spec.document_type)
            except (TypeError, ValueError):
                violations.add(f"{field}.document_type", f"{spec.document_type!r} is not a type code")
                continue
            references.append(
                TaxDocumentReference(
                    line_number=index + 1,
                    referenced_type=referenced_type,
                    referenced_folio=spec.folio,
                    referenced_date=spec.document_date,
                    reference_code=spec.reference_code,
                    reason=(spec.reason or "").strip(),
                )
            )
        return references

    @staticmethod
    def _totals(
        lines: list[TaxDocumentLine], vat_rate: Decimal, currency: Currency,
    ) -> tuple[Decimal, Decimal, Decimal, Decimal]:
        taxed = Money.zero(currency)
        exempt = Money.zero(currency)
        for line in lines:
            amount = Money.of(line.line_total, currency)
            if line.tax_treatment == TaxTreatment.EXEMPT:
                exempt = exempt + amount
            else:
                taxed = taxed + amount

        # INVARIANT: one rounding step per total, never per line
        net = taxed.round()
        exempt_total = exempt.round()
        tax = (taxed * vat_rate).round()
        total = net + exempt_total + tax
        return net.amount, exempt_total.amount, tax.amount, total.amount


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None
