# tests/test_sponsor_service.py
"""
Tests for registration and sponsor binding.

Run:
    pytest tests/test_sponsor_service.py -v
"""
import pytest

from models import SponsorBinding
from mlm_system import api
from mlm_system.config.structures import StructureType
from mlm_system.errors import CycleDetected, Unauthorized, ValidationError
from mlm_system.services.sponsor_service import SponsorService, generate_referral_code
from tests.conftest import NOW, BASE

S1 = StructureType.SUBSCRIPTION
S2 = StructureType.PURCHASE


def bindings_of(session, member):
    return session.query(SponsorBinding).filter_by(memberID=member.memberID).order_by(
        SponsorBinding.structureType, SponsorBinding.sequence
    ).all()


class TestRegistration:

    def test_referral_code_format(self):
        code = generate_referral_code()

        assert len(code) == 8
        assert code.isalnum() and code.upper() == code

    def test_register_with_sponsor_binds_both_structures(self, session, network):
        sponsor = network.member()

        member = SponsorService(session).registerMember("New", "new@example.com", sponsor.referralCode)

        bindings = bindings_of(session, member)
        assert [(b.structureType, b.sponsorID, b.sequence) for b in bindings] == [
            (1, sponsor.memberID, 1),
            (2, sponsor.memberID, 1),
        ]
        assert bindings[0].boundAt == NOW

    def test_register_without_sponsor(self, session):
        member = SponsorService(session).registerMember("Solo")

        assert bindings_of(session, member) == []
        assert member.referralCode


class TestBindReferral:

    def test_code_is_normalized(self, session, network):
        sponsor = network.member()
        user = network.member(at=NOW)

        result = api.bind_referral(user.memberID, f"  {sponsor.referralCode.lower()} ", session=session)

        assert result == {"success": True, "sponsor_id": sponsor.memberID}
        assert SponsorService(session).getSponsorInfo(user.memberID, S2)["sponsor_id"] == sponsor.memberID

    @pytest.mark.parametrize("code,error", [
        ("NOPE", "SPONSOR_NOT_FOUND"),
        ("", "SPONSOR_NOT_FOUND"),
    ])
    def test_unknown_code(self, session, network, code, error):
        user = network.member()

        assert api.bind_referral(user.memberID, code, session=session)["error"] == error

    def test_unknown_member(self, session, network):
        sponsor = network.member()

        with pytest.raises(ValidationError) as exc:
            SponsorService(session).bindReferral(404, sponsor.referralCode)

        assert exc.value.code == "MEMBER_NOT_FOUND"

    def test_self_referral(self, session, network):
        user = network.member()

        with pytest.raises(ValidationError) as exc:
            SponsorService(session).bindReferral(user.memberID, user.referralCode)

        assert exc.value.code == "SELF_REFERRAL"

    def test_already_has_sponsor(self, session, network):
        first = network.member()
        second = network.member()
        user = network.member(sponsor=first, at=NOW)

        with pytest.raises(ValidationError) as exc:
            SponsorService(session).bindReferral(user.memberID, second.referralCode)

        assert exc.value.code == "ALREADY_HAS_SPONSOR"

    def test_user_already_sponsors_others(self, session, network):
        sponsor = network.member()
        user = network.member(at=NOW)
        network.member(sponsor=user, at=NOW)

        with pytest.raises(ValidationError) as exc:
            SponsorService(session).bindReferral(user.memberID, sponsor.referralCode)

        assert exc.value.code == "USER_IS_SPONSOR"

    def test_sponsor_registered_later(self, session, network):
        user = network.member(at=BASE)
        sponsor = network.member(at=NOW)

        result = api.bind_referral(user.memberID, sponsor.referralCode, session=session)

        assert result == {"success": False, "error": "SPONSOR_REGISTERED_LATER"}
        assert bindings_of(session, user) == []

    def test_no_sponsor_info(self, session, network):
        user = network.member()

        assert api.get_sponsor_info(user.memberID, session=session) is None


class TestAdminBinding:

    def test_admin_bind(self, session, network, admin):
        sponsor = network.member()
        user = network.member(at=NOW)

        SponsorService(session).adminBindSponsor(admin.memberID, user.memberID, sponsor.referralCode)

        assert all(b.boundBy == admin.memberID for b in bindings_of(session, user))

    def test_admin_bind_requires_admin(self, session, network):
        sponsor = network.member()
        user = network.member(at=NOW)

        with pytest.raises(Unauthorized):
            SponsorService(session).adminBindSponsor(user.memberID, user.memberID, sponsor.referralCode)

    def test_override_appends_sequence(self, session, network, admin):
        old = network.member()
        new = network.member()
        user = network.member(sponsor=old)

        result = api.admin_override_sponsor(
            admin.memberID, user.memberID, new.referralCode, 1, session=session
        )

        assert result == {"success": True, "sponsor_id": new.memberID, "sequence": 2}
        s1 = [b for b in bindings_of(session, user) if b.structureType == 1]
        assert [(b.sponsorID, b.sequence) for b in s1] == [(old.memberID, 1), (new.memberID, 2)]
        assert s1[1].boundBy == admin.memberID
        assert s1[1].boundAt == NOW
        info = SponsorService(session).getSponsorInfo(user.memberID, S1)
        assert info["sponsor_id"] == new.memberID
        assert info["bound_at"] == NOW

    def test_override_same_sponsor(self, session, network, admin):
        old = network.member()
        user = network.member(sponsor=old)

        with pytest.raises(ValidationError) as exc:
            SponsorService(session).adminOverrideSponsor(admin.memberID, user.memberID, old.referralCode, S1)

        assert exc.value.code == "SAME_SPONSOR"

    def test_override_rejects_cycle(self, session, network, admin):
        top = network.member()
        middle = network.member(sponsor=top)
        bottom = network.member(sponsor=middle)

        with pytest.raises(CycleDetected) as exc:
            SponsorService(session).adminOverrideSponsor(admin.memberID, top.memberID, bottom.referralCode, S1)

        assert exc.value.code == "CYCLIC_SPONSOR"
        assert bindings_of(session, top) == []
