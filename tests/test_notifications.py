from contract_hub.notifications import INSERT, UPDATE, ChangeBus, ChangeEvent, TableScope


def _event(table="legal_notes", org="org-1", contract_id="c-1", action=INSERT):
    return ChangeEvent(table=table, action=action, organization_id=org, contract_id=contract_id, row_id="1")


def test_scope_matches_table_organization_and_contract():
    scope = TableScope(table="legal_notes", organization_id="org-1", contract_id="c-1")
    assert scope.matches(_event())
    assert not scope.matches(_event(table="risk_findings"))
    assert not scope.matches(_event(org="org-2"))
    assert not scope.matches(_event(contract_id="c-2"))


def test_unscoped_contract_matches_every_row_of_the_table():
    scope = TableScope(table="contracts", organization_id="org-1")
    assert scope.matches(_event(table="contracts", contract_id="c-1", action=UPDATE))
    assert scope.matches(_event(table="contracts", contract_id="c-9", action=UPDATE))


def test_publish_delivers_to_matching_subscriptions_only():
    bus = ChangeBus()
    seen_a, seen_b = [], []
    bus.subscribe(TableScope("legal_notes", "org-1", "c-1"), seen_a.append)
    bus.subscribe(TableScope("legal_notes", "org-1", "c-2"), seen_b.append)

    bus.publish([_event()])

    assert len(seen_a) == 1
    assert seen_b == []


def test_cancel_is_idempotent_and_stops_delivery():
    bus = ChangeBus()
    seen = []
    subscription = bus.subscribe(TableScope("legal_notes", "org-1"), seen.append)
    assert bus.subscription_count == 1

    subscription.cancel()
    subscription.cancel()
    bus.publish([_event()])

    assert seen == []
    assert not subscription.active
    assert bus.subscription_count == 0


def test_failing_handler_does_not_block_others():
    bus = ChangeBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(TableScope("legal_notes", "org-1"), broken)
    bus.subscribe(TableScope("legal_notes", "org-1"), seen.append)

    bus.publish([_event(), _event()])

    assert len(seen) == 2
