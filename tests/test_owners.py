import pytest

from nriadapt.owners import (
    ANNOTATION,
    CPU_SHARES,
    HUGEPAGE_LIMIT,
    MEMORY_LIMIT,
    MOUNT,
    RDT_CLASS,
    ConflictError,
    Owners,
    conflict,
)


def test_conflict_message_with_qualifier():
    err = conflict("00-bar", "10-foo", "annotation", "key")
    assert isinstance(err, ConflictError)
    assert str(err) == 'plugins "00-bar" and "10-foo" both tried to set annotation key'


def test_conflict_message_without_qualifier():
    err = conflict("b", "a", "memory limit")
    assert str(err) == 'plugins "b" and "a" both tried to set memory limit'


def test_keyed_claim_conflicts():
    owners = Owners()
    owners.claim("ctr0", ANNOTATION, "00-bar", "key")
    with pytest.raises(ConflictError) as info:
        owners.claim("ctr0", ANNOTATION, "10-foo", "key")
    assert str(info.value) == (
        'plugins "10-foo" and "00-bar" both tried to set annotation key'
    )


def test_scalar_claim_conflicts():
    owners = Owners()
    owners.claim("ctr0", RDT_CLASS, "00-bar")
    with pytest.raises(ConflictError, match="RDT class"):
        owners.claim("ctr0", RDT_CLASS, "10-foo")


def test_hugepage_conflict_message():
    owners = Owners()
    owners.claim("ctr0", HUGEPAGE_LIMIT, "00-bar", "1M")
    with pytest.raises(ConflictError) as info:
        owners.claim("ctr0", HUGEPAGE_LIMIT, "10-foo", "1M")
    assert str(info.value).endswith("hugepage limit of size 1M")


def test_distinct_keys_and_containers_do_not_conflict():
    owners = Owners()
    owners.claim("ctr0", MOUNT, "00-bar", "/mnt/a")
    owners.claim("ctr0", MOUNT, "10-foo", "/mnt/b")
    owners.claim("ctr1", MOUNT, "10-foo", "/mnt/a")
    owners.claim("ctr0", CPU_SHARES, "00-bar")
    owners.claim("ctr0", MEMORY_LIMIT, "10-foo")
    assert owners.owner("ctr0", MOUNT, "/mnt/a") == "00-bar"
    assert owners.owner("ctr1", MOUNT, "/mnt/a") == "10-foo"
    assert owners.owner("ctr0", MEMORY_LIMIT) == "10-foo"


def test_clear_allows_reclaim():
    owners = Owners()
    owners.claim("ctr0", ANNOTATION, "00-bar", "key")
    owners.clear("ctr0", ANNOTATION, "key")
    owners.claim("ctr0", ANNOTATION, "10-foo", "key")
    assert owners.owner("ctr0", ANNOTATION, "key") == "10-foo"


def test_clear_unknown_is_harmless():
    owners = Owners()
    owners.clear("ctr9", MOUNT, "/mnt/x")
    assert owners.owner("ctr9", MOUNT, "/mnt/x") is None