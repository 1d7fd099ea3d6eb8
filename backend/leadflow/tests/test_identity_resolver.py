from leadflow.models import BlockedIP, Lead, ResolutionEnum
from leadflow.services.identity_resolver import ClickIdentifiers, IdentityResolver


def test_unknown_click_id_is_uncorrelated(db):
    identity = IdentityResolver().resolve(db, "eli_missing")

    assert identity.resolution == ResolutionEnum.uncorrelated
    assert identity.lead is None and identity.visitor is None


def test_visitor_without_lead(db, make_visitor):
    make_visitor("eli_v1", gclid="G-visitor")

    identity = IdentityResolver().resolve(db, "eli_v1")

    assert identity.resolution == ResolutionEnum.visitor_only
    assert identity.click_ids.gclid == "G-visitor"


def test_newest_lead_with_click_id_wins(db, make_lead):
    make_lead("eli_dup", full_name="Old")
    newest = make_lead("eli_dup", full_name="New")

    identity = IdentityResolver().resolve(db, "eli_dup")

    assert identity.lead.id == newest.id


def test_lead_found_through_converted_visitor(db, make_lead, make_visitor):
    lead = make_lead(click_id=None)
    make_visitor("eli_v2", converted=True, lead_id=lead.id)

    identity = IdentityResolver().resolve(db, "eli_v2")

    assert identity.resolution == ResolutionEnum.lead
    assert identity.lead.id == lead.id


def test_click_id_precedence_event_then_lead_then_visitor(db, make_lead, make_visitor):
    make_visitor("eli_p", gclid="G-visitor", msclkid="M-visitor", fbclid="F-visitor")
    make_lead("eli_p", gclid="G-lead", msclkid="M-lead")

    identity = IdentityResolver().resolve(db, "eli_p", event_click_ids={"gclid": "G-event"})

    assert identity.click_ids == ClickIdentifiers(
        gclid="G-event", msclkid="M-lead", fbclid="F-visitor", fbc=None, fbp=None
    )


def test_blocked_visitor_ip_marks_lead_blocked(db, make_lead, make_visitor):
    lead = make_lead("eli_b", ip_address="10.0.0.9")
    make_visitor("eli_b", ip_address="203.0.113.7")
    db.add(BlockedIP(ip_address="203.0.113.7", reason="fraud"))
    db.commit()

    identity = IdentityResolver().resolve(db, "eli_b")
    db.commit()

    assert identity.blocked
    db.expire_all()
    assert db.get(Lead, lead.id).is_blocked


def test_static_blocklist_is_merged_with_table(db, make_lead):
    make_lead("eli_s", ip_address="198.51.100.4")

    assert IdentityResolver({"198.51.100.4"}).resolve(db, "eli_s").blocked
    assert not IdentityResolver().is_ip_blocked(db, None)
