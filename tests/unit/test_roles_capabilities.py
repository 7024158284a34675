import pytest

from src.identity.domain.identity import Identity
from src.identity.domain.value_objects.capability import Capability
from src.identity.domain.value_objects.role import Role, UnknownRoleError


def test_role_capability_sets_are_fixed():
    assert Role.ADMIN.capabilities == {
        Capability.READ_OWN, Capability.WRITE_OWN, Capability.READ_ALL, Capability.WRITE_ALL,
    }
    assert Role.STANDARD.capabilities == {Capability.READ_OWN, Capability.WRITE_OWN}


@pytest.mark.parametrize("raw,expected", [
    ("admin", Role.ADMIN),
    ("ADMIN", Role.ADMIN),
    (" administrator ", Role.ADMIN),
    ("user", Role.STANDARD),
    ("standard", Role.STANDARD),
])
def test_role_aliases_normalize(raw, expected):
    assert Role.from_string(raw) is expected


@pytest.mark.parametrize("raw", ["superuser", "", "PLATFORM_OWNER", "owner"])
def test_unknown_role_is_rejected_not_defaulted(raw):
    with pytest.raises(UnknownRoleError):
        Role.from_string(raw)


def test_identity_defaults_to_role_capabilities():
    ident = Identity(subject_id=7, role=Role.STANDARD)
    assert ident.capabilities == Role.STANDARD.capabilities
    assert ident.has_capability(Capability.READ_OWN)
    assert not ident.has_capability(Capability.READ_ALL)
    assert not ident.is_admin


def test_identity_cannot_exceed_role():
    with pytest.raises(ValueError):
        Identity(subject_id=7, role=Role.STANDARD, capabilities=frozenset({Capability.READ_ALL}))


def test_for_role_intersects_granted_capabilities():
    ident = Identity.for_role(1, Role.ADMIN, granted=[Capability.READ_OWN, Capability.READ_ALL])
    assert ident.capabilities == {Capability.READ_OWN, Capability.READ_ALL}
    assert not ident.has_capability(Capability.WRITE_ALL)


def test_for_role_empty_grant_means_no_capabilities():
    ident = Identity.for_role(1, Role.ADMIN, granted=[])
    assert ident.capabilities == frozenset()
    assert ident.is_admin


def test_has_capability_with_unknown_name_is_false():
    ident = Identity(subject_id=1, role=Role.ADMIN)
    assert ident.has_capability("read-all")
    assert not ident.has_capability("delete-everything")


@pytest.mark.parametrize("subject_id", [0, -3, True, "7", None])
def test_identity_requires_positive_integer_subject(subject_id):
    with pytest.raises(ValueError):
        Identity(subject_id=subject_id, role=Role.STANDARD)


def test_parse_many_ignores_unknown_names():
    assert Capability.parse_many(["read-own", "fly", 3, "read-all"]) == {Capability.READ_OWN, Capability.READ_ALL}
