"""Unit tests for regclean/reconcile.py"""

from regclean.image_ref import ImageRef, normalize_all
from regclean.reconcile import reconcile


def refs(*names):
    return normalize_all(names)


class TestReconcile:
    """Tests for reconcile"""

    def test_splits_registry_by_cluster_usage(self):
        """Test that used images are kept and the rest become candidates"""
        cluster = refs("reg.io/app:1", "reg.io/app:1@sha256:abc", "reg.io/app:2")
        registry = refs("reg.io/app:1", "reg.io/app:2", "reg.io/app:3")

        result = reconcile(cluster, registry)

        assert [str(r) for r in result.to_delete] == ["reg.io/app:3"]
        assert [str(r) for r in result.to_keep] == ["reg.io/app:1", "reg.io/app:2"]
        assert result.filtered_count == 0

    def test_partition_is_complete_and_disjoint(self):
        """Test that every registry image lands in exactly one list"""
        cluster = refs("reg.io/a:1", "reg.io/c:1", "other.io/x:1")
        registry = refs("reg.io/a:1", "reg.io/b:1", "reg.io/c:1", "reg.io/d:1")

        result = reconcile(cluster, registry)

        assert set(result.to_delete) | set(result.to_keep) == set(registry)
        assert not set(result.to_delete) & set(result.to_keep)
        assert all(ref not in cluster for ref in result.to_delete)
        assert all(ref in cluster for ref in result.to_keep)

    def test_keeps_registry_order(self):
        """Test that both outputs follow the registry listing order"""
        registry = refs("reg.io/z:1", "reg.io/a:1", "reg.io/m:1", "reg.io/b:1")
        cluster = refs("reg.io/m:1", "reg.io/z:1")

        result = reconcile(cluster, registry)

        assert [r.repository for r in result.to_keep] == ["z", "m"]
        assert [r.repository for r in result.to_delete] == ["a", "b"]

    def test_registry_host_is_part_of_identity(self):
        """Test that the same repo:tag on another host does not protect an image"""
        cluster = [ImageRef("mirror.io", "app", "1")]
        registry = [ImageRef("reg.io", "app", "1")]

        result = reconcile(cluster, registry)

        assert result.to_delete == registry
        assert result.to_keep == []

    def test_empty_cluster_deletes_everything(self):
        registry = refs("reg.io/a:1", "reg.io/b:1")
        assert reconcile([], registry).to_delete == registry

    def test_empty_registry(self):
        result = reconcile(refs("reg.io/a:1"), [])
        assert result.to_delete == []
        assert result.to_keep == []

    def test_duplicate_registry_entries_collapse(self):
        """Test that duplicate registry refs are reported once"""
        a = ImageRef("r", "a", "1")
        assert reconcile([], [a, a]).to_delete == [a]
