"""Tests for the per-prefix local mirror."""

from tiercache.cache.entry import now_ms
from tiercache.cache.mirror import DELETE_ALL, LocalMirror


class TestLocalMirror:
    """Test values held by the mirror."""

    def test_put_and_get(self) -> None:
        mirror = LocalMirror("users")
        mirror.put("1", {"name": "Ada"})

        entry = mirror.get_entry("1")
        assert entry is not None
        assert entry.value == {"name": "Ada"}
        assert "1" in mirror
        assert len(mirror) == 1

    def test_expired_entry_is_dropped_on_read(self) -> None:
        mirror = LocalMirror("users")
        mirror.fill("1", "old", ttl=100, created_at=now_ms() - 200)

        assert mirror.get_entry("1") is None
        assert len(mirror) == 0

    def test_fill_keeps_remaining_age(self) -> None:
        mirror = LocalMirror("users")
        created = now_ms() - 50
        entry = mirror.fill("1", "v", ttl=1000, created_at=created)
        assert entry is not None
        assert entry.created_at == created
        assert entry.age() >= 50

    def test_delete_and_clear(self) -> None:
        mirror = LocalMirror("users")
        mirror.put("1", "a")
        mirror.put("2", "b")

        assert mirror.delete("1") is True
        assert mirror.delete("1") is False
        mirror.clear()
        assert len(mirror) == 0

    def test_delete_contains(self) -> None:
        mirror = LocalMirror("users")
        for key in ("team:1", "team:2", "solo:3"):
            mirror.put(key, key)

        assert mirror.delete_contains("team") == 2
        assert mirror.get_entry("solo:3") is not None

    def test_delete_contains_qualified(self) -> None:
        mirror = LocalMirror("users")
        mirror.put("1", "a")

        assert mirror.delete_contains("users:1") == 0
        assert mirror.delete_contains("users:1", qualified=True) == 1

    def test_delete_all_sentinel(self) -> None:
        mirror = LocalMirror("users")
        mirror.put("1", "a")
        mirror.put("2", "b")

        assert mirror.delete_contains(DELETE_ALL) == 2
        assert len(mirror) == 0

    def test_bounded_mirror(self) -> None:
        mirror = LocalMirror("users", max_items=2)
        for key in "abcde":
            mirror.put(key, key)

        assert mirror.get_entry("a") is None
        assert mirror.get_entry("e") is not None


class TestFillTokens:
    """Remote reads never overwrite newer local state."""

    def test_fill_with_current_token(self) -> None:
        mirror = LocalMirror("users")
        token = mirror.begin_fill("1")

        entry = mirror.fill("1", "remote", token=token)

        assert entry is not None
        assert entry.value == "remote"

    def test_local_write_revokes_fill(self) -> None:
        mirror = LocalMirror("users")
        token = mirror.begin_fill("1")
        mirror.put("1", "local")

        entry = mirror.fill("1", "remote", token=token)

        assert entry is not None
        assert entry.value == "local"
        assert mirror.get_entry("1") is entry

    def test_delete_and_clear_revoke_fill(self) -> None:
        mirror = LocalMirror("users")

        token = mirror.begin_fill("1")
        mirror.delete("1")
        assert mirror.fill("1", "remote", token=token) is None

        token = mirror.begin_fill("1")
        mirror.clear()
        assert mirror.fill("1", "remote", token=token) is None

        token = mirror.begin_fill("team:1")
        mirror.delete_contains("team")
        assert mirror.fill("team:1", "remote", token=token) is None
        assert len(mirror) == 0

    def test_newer_fill_wins(self) -> None:
        mirror = LocalMirror("users")
        first = mirror.begin_fill("1")
        second = mirror.begin_fill("1")

        assert mirror.fill("1", "first", token=first) is None
        entry = mirror.fill("1", "second", token=second)
        assert entry is not None
        assert entry.value == "second"

    def test_end_fill(self) -> None:
        mirror = LocalMirror("users")
        token = mirror.begin_fill("1")
        mirror.end_fill("1", token)

        assert mirror.fill("1", "remote", token=token) is None


class TestAttachedStructures:
    """Test local-only structures attached to entries."""

    def test_attach_creates_invisible_placeholder(self) -> None:
        mirror = LocalMirror("users")
        structure = mirror.attached("1", "map", dict)

        assert structure == {}
        assert mirror.get_entry("1") is None
        assert "1" not in mirror

    def test_attach_returns_same_structure(self) -> None:
        mirror = LocalMirror("users")
        first = mirror.attached("1", "map", dict)
        first["x"] = 1
        assert mirror.attached("1", "map", dict) is first

    def test_fill_keeps_attached(self) -> None:
        mirror = LocalMirror("users")
        mirror.attached("1", "map", dict)["x"] = 1

        mirror.fill("1", "remote")

        assert mirror.attached("1", "map", dict) == {"x": 1}

    def test_put_drops_attached(self) -> None:
        mirror = LocalMirror("users")
        mirror.attached("1", "map", dict)["x"] = 1

        mirror.put("1", "local")

        assert mirror.attached("1", "map", dict) == {}

    def test_delete_drops_attached(self) -> None:
        mirror = LocalMirror("users")
        mirror.put("1", "a")
        mirror.attached("1", "map", dict)["x"] = 1

        mirror.delete("1")

        assert mirror.attached("1", "map", dict) == {}

    def test_delete_attached(self) -> None:
        mirror = LocalMirror("users")
        mirror.put("1", "a")
        mirror.attached("1", "map", dict)
        mirror.attached("1", "set", set)

        assert mirror.delete_attached("1", "map") is True
        assert mirror.delete_attached("1", "map") is False
        assert mirror.delete_all_attached("1") is True
        assert mirror.delete_all_attached("1") is False
        assert mirror.get_entry("1") is not None
