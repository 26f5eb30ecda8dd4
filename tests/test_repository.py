import zlib
from datetime import datetime, timedelta, timezone

import pytest

from imagereflector.repository import (
    IMAGE_FINALIZER,
    RECONCILE_REQUEST_ANNOTATION,
    READY,
    EventRecorder,
    ImageRepository,
    ImageRepositoryReconciler,
    ReconcileResult,
    filter_out_tags,
    is_equal_slice_content,
    notify,
    parse_image_reference,
    sort_tags_and_get_latest_tags,
    ScanResult,
)

TEST_IMAGE = "example.com/foo/bar"


class MockDatabase:
    def __init__(self, tag_data=None, read_error=None, write_error=None):
        self.tag_data = list(tag_data or [])
        self.read_error = read_error
        self.write_error = write_error

    def set_tags(self, repo, tags):
        if self.write_error:
            raise self.write_error
        self.tag_data.extend(tags)
        return str(zlib.adler32(",".join(tags).encode()))

    def tags(self, repo):
        if self.read_error:
            raise self.read_error
        return self.tag_data


def _repo():
    obj = ImageRepository()
    obj.spec.image = TEST_IMAGE
    obj.spec.interval = timedelta(minutes=1)
    obj.spec.exclusion_list = ["aaa"]
    obj.status.observed_exclusion_list = ["aaa"]
    return obj


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _with_scan(obj, ago):
    obj.status.last_scan_result = ScanResult(scan_time=NOW - ago)


def test_should_scan_new_object():
    d = ImageRepositoryReconciler(MockDatabase(), list).should_scan(_repo(), NOW)
    assert (d.scan, d.next_scan, d.reason) == (True, timedelta(minutes=1), "first scan")


@pytest.mark.parametrize("handled", ["", "foo"])
def test_should_scan_annotation(handled):
    obj = _repo()
    obj.annotations[RECONCILE_REQUEST_ANNOTATION] = "now"
    obj.status.last_handled_reconcile_at = handled
    _with_scan(obj, timedelta(seconds=30))
    d = ImageRepositoryReconciler(MockDatabase(), list).should_scan(obj, NOW)
    assert (d.scan, d.reason) == (True, "reconcile requested")


def test_should_scan_same_annotation():
    obj = _repo()
    obj.annotations[RECONCILE_REQUEST_ANNOTATION] = "now"
    obj.status.last_handled_reconcile_at = "now"
    obj.status.canonical_image_name = TEST_IMAGE
    _with_scan(obj, timedelta(seconds=30))
    d = ImageRepositoryReconciler(MockDatabase(["foo"]), list).should_scan(obj, NOW)
    assert (d.scan, d.next_scan, d.reason) == (False, timedelta(seconds=30), "")


def test_should_scan_change_image():
    obj = _repo()
    obj.status.canonical_image_name = TEST_IMAGE
    obj.spec.image = "example.com/other/image"
    _with_scan(obj, timedelta(seconds=30))
    d = ImageRepositoryReconciler(MockDatabase(["foo"]), list).should_scan(obj, NOW)
    assert d.reason == "new image name"


def test_should_scan_exclusion_change():
    obj = _repo()
    obj.status.observed_exclusion_list = ["baz"]
    obj.spec.exclusion_list = ["bar"]
    obj.status.canonical_image_name = TEST_IMAGE
    _with_scan(obj, timedelta(seconds=30))
    d = ImageRepositoryReconciler(MockDatabase(["foo"]), list).should_scan(obj, NOW)
    assert d.reason == "updated exclusion list"


def test_should_scan_no_tags():
    obj = _repo()
    obj.status.canonical_image_name = TEST_IMAGE
    _with_scan(obj, timedelta(seconds=10))
    d = ImageRepositoryReconciler(MockDatabase(), list).should_scan(obj, NOW)
    assert (d.scan, d.reason) == (True, "no tags in database")


def test_should_scan_read_failure():
    obj = _repo()
    obj.status.canonical_image_name = TEST_IMAGE
    _with_scan(obj, timedelta(seconds=30))
    db = MockDatabase(["foo"], read_error=RuntimeError("fail"))
    with pytest.raises(RuntimeError):
        ImageRepositoryReconciler(db, list).should_scan(obj, NOW)


def test_should_scan_after_interval():
    obj = _repo()
    obj.status.canonical_image_name = TEST_IMAGE
    _with_scan(obj, timedelta(minutes=2))
    d = ImageRepositoryReconciler(MockDatabase(["foo"]), list).should_scan(obj, NOW)
    assert (d.scan, d.next_scan, d.reason) == (True, timedelta(minutes=1), "triggered by interval")


@pytest.mark.parametrize(
    "tags,exclusion,want,checksum",
    [
        (["a", "b", "c", "d"], [], ["d", "c", "b", "a"], None),
        (["c", "d", "a", "b"], [], ["d", "c", "b", "a"], "139002383"),
        (["c", "b", "a", "d"], [], ["d", "c", "b", "a"], "139002383"),
        (list("abcdefghijk"), [], list("kjihgfedcba"), None),
        (["a", "b", "c", "d"], ["c"], ["d", "b", "a"], None),
        (["a", "b", "c", "d"], ["c", "a"], ["d", "b"], None),
    ],
)
def test_scan(tags, exclusion, want, checksum):
    db = MockDatabase()
    r = ImageRepositoryReconciler(db, lambda ref: list(tags))
    obj = ImageRepository()
    obj.spec.image = TEST_IMAGE
    obj.spec.exclusion_list = exclusion
    r.scan(obj, parse_image_reference(TEST_IMAGE, False))
    assert db.tags(TEST_IMAGE) == want
    res = obj.status.last_scan_result
    if checksum:
        assert res.revision == checksum
    assert res.tag_count == len(want)
    assert res.scan_time is not None
    assert res.latest_tags == want[:10]


def test_scan_bad_pattern():
    r = ImageRepositoryReconciler(MockDatabase(), lambda ref: ["a"])
    obj = ImageRepository()
    obj.spec.exclusion_list = ["[="]
    with pytest.raises(ValueError, match="failed to compile regex"):
        r.scan(obj, parse_image_reference(TEST_IMAGE, False))


def test_scan_write_fails():
    r = ImageRepositoryReconciler(MockDatabase(write_error=RuntimeError("fail")), lambda ref: ["a", "b"])
    with pytest.raises(RuntimeError, match="failed to set tags"):
        r.scan(ImageRepository(), parse_image_reference(TEST_IMAGE, False))


def test_scan_annotation():
    r = ImageRepositoryReconciler(MockDatabase(), lambda ref: ["a", "b"])
    obj = ImageRepository(annotations={RECONCILE_REQUEST_ANNOTATION: "foo"})
    r.scan(obj, parse_image_reference(TEST_IMAGE, False))
    assert obj.status.last_handled_reconcile_at == "foo"


@pytest.mark.parametrize(
    "tags,want",
    [
        ([], []),
        (["1.0.0", "0.0.8", "1.2.5", "3.0.1", "1.0.1"], ["3.0.1", "1.2.5", "1.0.1", "1.0.0", "0.0.8"]),
        (["1.0.0", "0.0.8", "1.2.5", "3.0.1", "1.0.1", "5.1.1", "4.1.0", "4.5.0", "4.0.3", "2.2.2", "0.5.1", "0.1.0"],
         ["5.1.1", "4.5.0", "4.1.0", "4.0.3", "3.0.1", "2.2.2", "1.2.5", "1.0.1", "1.0.0", "0.5.1"]),
        (["-62", "-88", "73", "72", "15"], ["73", "72", "15", "-88", "-62"]),
        (["-62", "-88", "73", "72", "15", "16", "15", "29", "-33", "-91", "100", "101"],
         ["73", "72", "29", "16", "15", "15", "101", "100", "-91", "-88"]),
        (["aaa", "bbb", "ccc"], ["ccc", "bbb", "aaa"]),
    ],
)
def test_sort_tags(tags, want):
    assert sort_tags_and_get_latest_tags(list(tags)) == want


@pytest.mark.parametrize(
    "tags,patterns,want",
    [
        (["a", "b", "c", "d"], [], ["a", "b", "c", "d"]),
        (["a", "b", "c", "d"], ["[abc]"], ["d"]),
        (["a", "b", "c", "d"], ["[a]", "[d]"], ["b", "c"]),
        (["0.1.0", "0.2.0", "0.2.-alpha", "0.3.0", "0.4.0", "0.4.0.sig"],
         ["^.*\\-alpha$", "^.*\\.sig$"], ["0.1.0", "0.2.0", "0.3.0", "0.4.0"]),
        (["aaa", "bbb", "ccc", "ddd"], ["aaa|ccc"], ["bbb", "ddd"]),
    ],
)
def test_filter_out_tags(tags, patterns, want):
    assert filter_out_tags(tags, patterns) == want


def test_filter_invalid_pattern():
    with pytest.raises(ValueError):
        filter_out_tags([], ["[="])


@pytest.mark.parametrize(
    "a,b,want",
    [
        (None, None, True),
        (["foo1", "bar1"], ["foo1", "bar1"], True),
        (["foo1", "bar1"], ["foo2", "bar1"], False),
        (["foo1", "bar1"], ["foo1", "bar1", "baz1"], False),
    ],
)
def test_is_equal_slice_content(a, b, want):
    assert is_equal_slice_content(a, b) is want


@pytest.mark.parametrize(
    "old,new,want",
    [
        (None, ("True", "Succeeded", "found x tags"), "Normal Succeeded found x tags"),
        (("True", "Succeeded", "found x tags"), ("True", "Succeeded", "found x tags"), "Trace Succeeded foo"),
        (("True", "Succeeded", "found x tags"), ("True", "Succeeded", "found y tags"), "Normal Succeeded found y tags"),
        (("True", "Succeeded", "found x tags"), ("False", "Failed", "scan failed"), "Warning Failed scan failed"),
    ],
)
def test_notify(old, new, want):
    recorder = EventRecorder()
    old_obj, new_obj = ImageRepository(), ImageRepository()
    if old:
        old_obj.set_condition(READY, *old)
    new_obj.set_condition(READY, *new)
    notify(recorder, old_obj, new_obj, "foo")
    assert [str(e) for e in recorder.events] == [want]


def test_parse_image_reference():
    assert str(parse_image_reference("example.com/foo/bar", False)) == "example.com/foo/bar"
    assert str(parse_image_reference("podinfo", False)) == "index.docker.io/library/podinfo"
    with pytest.raises(ValueError):
        parse_image_reference("ghcr.io/stefanprodan/podinfo/foo:bar:zzz:qqq/aaa", False)


def test_reconcile_flow():
    r = ImageRepositoryReconciler(MockDatabase(), lambda ref: ["v1", "v2"])
    obj = _repo()
    assert r.reconcile(obj, NOW) == ReconcileResult(requeue=True)
    assert IMAGE_FINALIZER in obj.finalizers
    result = r.reconcile(obj, NOW)
    assert result.requeue_after == timedelta(minutes=1)
    assert obj.is_ready()
    assert obj.status.canonical_image_name == TEST_IMAGE
    assert obj.get_condition(READY).message.startswith("successful scan: found 2 tags")


def test_reconcile_invalid_image_stalls():
    r = ImageRepositoryReconciler(MockDatabase(), lambda ref: [])
    obj = ImageRepository(finalizers=[IMAGE_FINALIZER])
    obj.spec.image = "bad:image:name"
    assert r.reconcile(obj, NOW) == ReconcileResult()
    assert obj.get_condition("Stalled").reason == "ImageURLInvalid"
    assert not obj.is_ready()


def test_reconcile_delete_removes_finalizer():
    r = ImageRepositoryReconciler(MockDatabase(), lambda ref: [])
    obj = ImageRepository(finalizers=[IMAGE_FINALIZER], deletion_timestamp=NOW)
    assert r.reconcile(obj, NOW) == ReconcileResult()
    assert obj.finalizers == []