from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from app.services import referrals
from app.services.magic_links import get_or_create_user
from app.services.referrals import (
    claim_all_rewards,
    claim_reward,
    generate_referral_code,
    get_referral_stats,
    next_tier,
    send_referral_invitation,
    tier_for_count,
)


@pytest.fixture
def referrer(db, make_org, make_user):
    org_id = make_org("Referrer Logistics")
    user_id = make_user("referrer@acme.test", organization_id=org_id, full_name="Rita Referrer")
    code = generate_referral_code(db, user_id=user_id)["code"]
    db.commit()
    return {"user_id": user_id, "organization_id": org_id, "code": code}


def _signup(db, email, code):
    user = get_or_create_user(db, email=email, referral_code=code)
    db.commit()
    return user


def _rewards(db, user_id):
    return db.execute(
        text("SELECT id, tier, minutes, credits_cents FROM referral_rewards WHERE user_id = :user_id ORDER BY id"),
        {"user_id": user_id},
    ).all()


@pytest.mark.parametrize(
    "count, tier, upcoming",
    [(0, None, "Bronze"), (1, "Bronze", "Silver"), (4, "Silver", "Gold"), (5, "Gold", "Platinum"), (25, "Platinum", None)],
)
def test_tier_thresholds(count, tier, upcoming):
    reached = tier_for_count(count)
    following = next_tier(count)

    assert (reached.name if reached else None) == tier
    assert (following.name if following else None) == upcoming


def test_code_is_stable_once_generated(db, referrer):
    again = generate_referral_code(db, user_id=referrer["user_id"])

    assert again["created"] is False
    assert again["code"] == referrer["code"]
    assert again["link"].endswith(f"/signup?ref={referrer['code']}")


def test_rewards_only_on_tier_increase(db, referrer):
    first = _signup(db, "one@carrier.test", referrer["code"])
    assert first["created"] is True
    assert first["referral"]["rewarded"] is True

    second = _signup(db, "two@carrier.test", referrer["code"])
    assert second["referral"]["rewarded"] is False

    third = _signup(db, "three@carrier.test", referrer["code"])
    assert third["referral"]["rewarded"] is True

    assert [row.tier for row in _rewards(db, referrer["user_id"])] == ["Bronze", "Silver"]

    stats = get_referral_stats(db, user_id=referrer["user_id"])
    assert stats["active_referrals"] == 3
    assert stats["current_tier"] == "Silver"
    assert stats["next_tier"] == "Gold"
    assert stats["referrals_to_next_tier"] == 2
    assert stats["unclaimed_minutes"] == 260


def test_self_referral_is_ignored(db, referrer):
    existing = get_or_create_user(db, email="referrer@acme.test", referral_code=referrer["code"])

    assert existing["created"] is False
    assert _rewards(db, referrer["user_id"]) == []


def test_unknown_code_creates_user_without_referral(db):
    user = _signup(db, "solo@carrier.test", "NOPE")

    assert user["created"] is True
    assert user["referral"] is None


def test_claim_reward_credits_organization_once(db, referrer):
    _signup(db, "one@carrier.test", referrer["code"])
    reward_id = int(_rewards(db, referrer["user_id"])[0].id)

    result = claim_reward(db, user_id=referrer["user_id"], reward_id=reward_id)
    db.commit()

    assert result["claimed"] == {"minutes": 60, "credits": 0}
    balance = db.execute(
        text("SELECT bonus_minutes_balance FROM organizations WHERE id = :id"),
        {"id": referrer["organization_id"]},
    ).scalar_one()
    assert int(balance) == 60

    with pytest.raises(ValueError, match="already claimed"):
        claim_reward(db, user_id=referrer["user_id"], reward_id=reward_id)


def test_expired_reward_cannot_be_claimed(db, referrer):
    _signup(db, "one@carrier.test", referrer["code"])
    reward_id = int(_rewards(db, referrer["user_id"])[0].id)
    later = datetime.now(timezone.utc) + timedelta(days=120)

    with pytest.raises(ValueError, match="expired"):
        claim_reward(db, user_id=referrer["user_id"], reward_id=reward_id, now=later)


def test_claim_all_sums_rewards(db, referrer):
    for index in range(3):
        _signup(db, f"carrier{index}@carrier.test", referrer["code"])

    result = claim_all_rewards(db, user_id=referrer["user_id"])

    assert result["claimed_count"] == 2
    assert result["claimed"] == {"minutes": 260, "credits": 0}

    with pytest.raises(LookupError):
        claim_all_rewards(db, user_id=referrer["user_id"])


def test_invitation_validation_errors(db, referrer, make_user):
    make_user("taken@carrier.test")

    assert send_referral_invitation(db, referrer_user_id=referrer["user_id"], email="not-an-email") == {
        "success": False,
        "errors": ["Invalid email format"],
    }
    self_invite = send_referral_invitation(db, referrer_user_id=referrer["user_id"], email="referrer@acme.test")
    assert "You cannot refer yourself" in self_invite["errors"]
    taken = send_referral_invitation(db, referrer_user_id=referrer["user_id"], email="taken@carrier.test")
    assert taken["errors"] == ["This email is already registered"]


def test_invitation_is_recorded_and_activated_at_signup(db, referrer, monkeypatch):
    sent = []
    monkeypatch.setattr(referrals, "send_referral_invitation_email", lambda **kwargs: sent.append(kwargs) or True)

    result = send_referral_invitation(
        db, referrer_user_id=referrer["user_id"], email="New@Carrier.test", referrer_name="Rita"
    )
    db.commit()

    assert result["success"] is True
    assert result["email_sent"] is True
    assert sent[0]["to_email"] == "new@carrier.test"

    again = send_referral_invitation(db, referrer_user_id=referrer["user_id"], email="new@carrier.test")
    assert again["errors"] == ["This email has already been referred"]

    user = _signup(db, "new@carrier.test", referrer["code"])
    assert user["referral"]["referral_id"] == result["referral_id"]
