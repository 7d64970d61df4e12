"""
Property-based tests for document totals.

Hypothesis generates priced lines and checks that the builder rounds each
total exactly once, at the document level.
"""

from decimal import ROUND_HALF_UP, Decimal

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from dte_kernel.domain.document_types import TaxTreatment
from dte_kernel.domain.dtos import LineSpec
from dte_kernel.services.document_builder import DocumentBuilder

VAT = Decimal("0.19")

quantities = st.decimals(min_value=Decimal("0.001"), max_value=Decimal("1000"), places=3)
prices = st.decimals(min_value=Decimal("0"), max_value=Decimal("1000000"), places=2)
treatments = st.sampled_from([TaxTreatment.TAXED, TaxTreatment.EXEMPT])

line_specs = st.lists(
    st.builds(LineSpec, description=st.just("Item"), quantity=quantities, unit_price=prices, tax_treatment=treatments),
    min_size=1,
    max_size=20,
)

fixture_settings = settings(
    max_examples=200,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)


def _round(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


class TestTotalsProperties:

    @fixture_settings
    @given(lines=line_specs)
    def test_total_is_sum_of_parts(self, make_source, lines):
        document = DocumentBuilder().build(make_source(lines=tuple(lines)))

        assert document.total_amount == document.net_amount + document.exempt_amount + document.tax_amount

    @fixture_settings
    @given(lines=line_specs)
    def test_rounded_once_from_unrounded_sums(self, make_source, lines):
        document = DocumentBuilder().build(make_source(lines=tuple(lines)))

        taxed = sum((l.quantity * l.unit_price for l in lines if l.tax_treatment == TaxTreatment.TAXED), Decimal("0"))
        exempt = sum((l.quantity * l.unit_price for l in lines if l.tax_treatment == TaxTreatment.EXEMPT), Decimal("0"))
        assert document.net_amount == _round(taxed)
        assert document.exempt_amount == _round(exempt)
        assert document.tax_amount == _round(taxed * VAT)

    @fixture_settings
    @given(lines=line_specs)
    def test_clp_totals_are_whole_pesos(self, make_source, lines):
        document = DocumentBuilder().build(make_source(lines=tuple(lines)))

        for amount in (document.net_amount, document.exempt_amount, document.tax_amount, document.total_amount):
            assert amount == amount.to_integral_value()

    @fixture_settings
    @given(lines=line_specs, data=st.data())
    def test_line_order_does_not_change_totals(self, make_source, lines, data):
        shuffled = data.draw(st.permutations(lines))

        first = DocumentBuilder().build(make_source(lines=tuple(lines)))
        second = DocumentBuilder().build(make_source(lines=tuple(shuffled)))

        assert (first.net_amount, first.exempt_amount, first.tax_amount) == (
            second.net_amount, second.exempt_amount, second.tax_amount,
        )
