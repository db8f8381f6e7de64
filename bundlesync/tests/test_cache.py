from __future__ import annotations

from types import SimpleNamespace

from bundlesync.src.cache import ConfigMapCache


def make_config_map(namespace: str, resource_version: str | None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name="root-cert-bundle", namespace=namespace, resource_version=resource_version
        ),
        data={},
    )


def test_store_and_get() -> None:
    cache = ConfigMapCache()
    config_map = make_config_map("foo", "1")

    cache.store(config_map)

    assert cache.get("foo") is config_map
    assert cache.get("bar") is None
    assert len(cache) == 1


def test_store_keeps_newer_revision() -> None:
    cache = ConfigMapCache()
    newer = make_config_map("foo", "12")
    cache.store(newer)

    cache.store(make_config_map("foo", "9"))

    assert cache.get("foo") is newer


def test_store_accepts_newer_revision() -> None:
    cache = ConfigMapCache()
    cache.store(make_config_map("foo", "9"))
    newer = make_config_map("foo", "12")

    cache.store(newer)

    assert cache.get("foo") is newer


def test_store_accepts_unparseable_revision() -> None:
    cache = ConfigMapCache()
    cache.store(make_config_map("foo", "12"))
    opaque = make_config_map("foo", "abc")

    cache.store(opaque)

    assert cache.get("foo") is opaque


def test_store_ignores_objects_without_namespace() -> None:
    cache = ConfigMapCache()

    cache.store(make_config_map("", "1"))

    assert len(cache) == 0


def test_evict() -> None:
    cache = ConfigMapCache()
    cache.store(make_config_map("foo", "1"))

    cache.evict("foo")
    cache.evict("never-stored")

    assert cache.get("foo") is None


def test_replace_all_drops_entries_missing_from_listing() -> None:
    cache = ConfigMapCache()
    cache.store(make_config_map("stale", "1"))
    fresh = make_config_map("foo", "3")

    cache.replace_all([fresh])

    assert cache.get("stale") is None
    assert cache.get("foo") is fresh
    assert len(cache) == 1


def test_evict_with_revision_refuses_late_store_of_deleted_object() -> None:
    cache = ConfigMapCache()
    cache.store(make_config_map("foo", "5"))

    cache.evict("foo", "6")

    assert cache.store(make_config_map("foo", "5")) is False
    assert cache.store(make_config_map("foo", "6")) is False
    assert cache.store(make_config_map("foo", None)) is False
    assert cache.get("foo") is None


def test_store_of_recreated_object_clears_tombstone() -> None:
    cache = ConfigMapCache()
    cache.evict("foo", "6")
    recreated = make_config_map("foo", "7")

    assert cache.store(recreated) is True
    assert cache.get("foo") is recreated
    assert cache.store(make_config_map("foo", "3")) is False


def test_opaque_revision_tombstone_refuses_only_equal_revision() -> None:
    cache = ConfigMapCache()
    cache.evict("foo", "abc")

    assert cache.store(make_config_map("foo", "abc")) is False
    assert cache.store(make_config_map("foo", "abd")) is True


def test_evict_without_revision_keeps_no_tombstone() -> None:
    cache = ConfigMapCache()
    cache.evict("foo")

    assert cache.store(make_config_map("foo", "1")) is True


def test_forget_drops_tombstone() -> None:
    cache = ConfigMapCache()
    cache.evict("foo", "6")

    cache.forget("foo")

    assert cache.store(make_config_map("foo", "2")) is True


def test_replace_all_keeps_tombstones_for_namespaces_not_listed() -> None:
    cache = ConfigMapCache()
    cache.evict("gone", "9")
    cache.evict("back", "4")

    cache.replace_all([make_config_map("back", "8")])

    assert cache.store(make_config_map("gone", "9")) is False
    assert cache.store(make_config_map("back", "3")) is False
    assert cache.get("back").metadata.resource_version == "8"
