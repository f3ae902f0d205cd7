from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from contract_hub.errors import ContractNotFoundError
from contract_hub.models import Contract, ContractEntity
from contract_hub.services.views import ContractViews, resolve_display_fields
from contract_hub.status import ContractStatus

from tests.conftest import classify

NOW = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


@pytest.fixture
def views(store):
    return ContractViews(store)


def test_display_fields_prefer_latest_entities():
    contract = Contract(
        name="Nama dari form",
        first_party="PT Form",
        second_party="PT Kedua",
        value_rp=Decimal("100.00"),
        end_date=date(2025, 1, 1),
    )
    entities = ContractEntity(
        contract_name="Nama hasil ekstraksi",
        first_party="PT Ekstraksi",
        second_party=None,
        value_rp=Decimal("250.00"),
    )

    display = resolve_display_fields(contract, entities)

    assert display.source == "entities"
    assert display.name == "Nama hasil ekstraksi"
    assert display.first_party == "PT Ekstraksi"
    assert display.second_party == "PT Kedua"
    assert display.value_rp == Decimal("250.00")
    assert display.end_date == date(2025, 1, 1)


def test_display_fields_fall_back_to_contract():
    contract = Contract(name="Sewa Kendaraan", first_party="PT Armada")

    display = resolve_display_fields(contract, None)

    assert display.source == "contract"
    assert display.name == "Sewa Kendaraan"
    assert display.first_party == "PT Armada"
    assert display.value_rp is None


async def _portfolio(store, org):
    ctx = org.procurement
    a = await store.create_contract(
        ctx, name="A", status=ContractStatus.ACTIVE, value_rp=Decimal("1000000.00"),
        end_date=TODAY + timedelta(days=10),
    )
    b = await store.create_contract(
        ctx, name="B", status=ContractStatus.ACTIVE, value_rp=Decimal("3000000.50"),
        end_date=TODAY + timedelta(days=45),
    )
    c = await store.create_contract(
        ctx, name="C", value_rp=Decimal("500.00"), end_date=TODAY + timedelta(days=80),
    )
    d = await store.create_contract(
        ctx, name="D", status=ContractStatus.EXPIRED, end_date=TODAY - timedelta(days=5),
    )
    e = await store.create_contract(ctx, name="E", status=ContractStatus.APPROVED, end_date=TODAY)
    await classify(store, org.legal, a.id, "High")
    await classify(store, org.legal, b.id, "Low")
    await classify(store, org.legal, d.id, "High")
    return a, b, c, d, e


async def test_management_kpi(store, org, views):
    await _portfolio(store, org)

    kpi = await views.management_kpi(org.management, now=NOW)

    assert kpi.total_contracts == 5
    assert kpi.by_status["Active"] == 2
    assert kpi.by_status["Draft"] == 1
    assert kpi.by_status["Expired"] == 1
    assert kpi.by_status["Approved"] == 1
    assert kpi.by_status["Rejected"] == 0
    assert set(kpi.by_status) == {status.value for status in ContractStatus}
    assert kpi.high_risk == 2
    assert (kpi.expiring_30_days, kpi.expiring_60_days, kpi.expiring_90_days) == (1, 2, 3)
    assert kpi.total_value == Decimal("4000500.50")
    assert kpi.average_active_value == Decimal("2000000.25")
    assert [(r.level, r.count, r.percentage) for r in kpi.risk_distribution] == [
        ("Low", 1, 33.33),
        ("Medium", 0, 0.0),
        ("High", 2, 66.67),
    ]


async def test_management_kpi_of_empty_portfolio(org, views):
    kpi = await views.management_kpi(org.management, now=NOW)

    assert kpi.total_contracts == 0
    assert kpi.total_value == Decimal("0.00")
    assert kpi.average_active_value == Decimal("0.00")
    assert all(r.percentage == 0.0 for r in kpi.risk_distribution)


async def test_legal_kpi(store, org, other_org, views):
    a, *_ = await _portfolio(store, org)
    await store.add_contract_entities(org.legal, a.id, contract_name="A")
    await store.create_contract(other_org.procurement, name="foreign")

    kpi = await views.legal_kpi(org.legal)

    assert kpi.contracts_this_week == 5
    assert kpi.high_risk == 2
    assert kpi.pending_analysis == 4


async def test_legal_kpi_counts_only_recent_contracts(store, org, views):
    await store.create_contract(org.procurement, name="baru")

    kpi = await views.legal_kpi(org.legal, now=datetime.now(timezone.utc) + timedelta(days=8))

    assert kpi.contracts_this_week == 0


async def test_contract_detail_bundle(store, org, views):
    contract = await store.create_contract(org.procurement, name="Form", first_party="PT Form")
    await store.add_contract_entities(org.legal, contract.id, contract_name="Ekstraksi", first_party=None)
    await classify(
        store, org.legal, contract.id, "High", [{"section": "Penalty", "level": "High", "title": "Uncapped penalty"}]
    )
    await store.add_legal_note(org.legal, contract.id, "Minta revisi pasal 7")
    await store.record_performance_metric(org.management, contract.id, "on_time_delivery", 92.5)
    await store.add_analysis_result(
        org.legal, contract.id, "risk_classification", {"error": "timeout"}, "Unknown", 0.0, "error"
    )

    detail = await views.contract_detail(org.legal, contract.id)

    assert detail.contract.id == contract.id
    assert detail.display.source == "entities"
    assert detail.display.name == "Ekstraksi"
    assert detail.display.first_party == "PT Form"
    assert [f.title for f in detail.risk_findings] == ["Uncapped penalty"]
    assert [n.note for n in detail.legal_notes] == ["Minta revisi pasal 7"]
    assert [s.stage for s in detail.lifecycle] == ["Draft"]
    assert [p.metric_type for p in detail.performance] == ["on_time_delivery"]
    assert detail.risk_analysis.model_used == "risk-model-v2"


async def test_contract_detail_of_foreign_contract(store, org, other_org, views):
    contract = await store.create_contract(org.procurement, name="Rahasia")

    with pytest.raises(ContractNotFoundError):
        await views.contract_detail(other_org.legal, contract.id)
