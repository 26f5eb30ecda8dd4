# imagereflector

imagereflector keeps a local record of the tags in container image
repositories. It decides when a repository is due for a scan. It then lists
and filters the tags, stores them, and reports the outcome as conditions
and events on the repository object.

The package uses only the standard library.

## Storing tags

`imagereflector.database.TagDatabase` stores one tag list per repository.
The data lives in a SQLite file named `tags.sqlite` inside the directory you
give it. The directory is created if it is missing.

```python
from imagereflector.database import TagDatabase

with TagDatabase("/tmp/imagereflector-tags") as db:
    checksum = db.set_tags("example.com/foo/bar", ["latest", "v0.0.1", "v0.0.2"])
    print(checksum)                        # 1943865137
    print(db.tags("example.com/foo/bar"))  # ['latest', 'v0.0.1', 'v0.0.2']
    print(db.tags("unknown/repo"))         # []
```

- `set_tags` replaces the whole list for a repository. It returns the
  Adler-32 checksum of the stored JSON as a decimal string.
- `tags` returns an empty list for a repository that has no stored tags.
- `run_value_log_gc(discard_ratio)` compacts the file when the share of free
  pages is at least `discard_ratio`.
  - It raises `NoRewriteError` when there is not enough free space to
    reclaim.
  - It raises `ValueError` unless `0 < discard_ratio < 1`.
- `close()` closes the store. Leaving the `with` block also closes it.

## Compacting storage

`imagereflector.gc.GarbageCollector` calls `discard_value_log_files` once per
`interval` seconds. It stops when the `threading.Event` passed to `start` is
set.

Each run calls `run_value_log_gc` repeatedly and returns the number of passes
that succeeded. A run stops at the first `NoRewriteError`, at any other error
(which it logs), or after `MAX_DISCARDS` (1000) passes.

```python
import threading
from imagereflector.database import TagDatabase
from imagereflector.gc import GarbageCollector

db = TagDatabase("/tmp/imagereflector-tags")
stop = threading.Event()
collector = GarbageCollector("tags-gc", db, interval=300.0, discard_ratio=0.5)
worker = threading.Thread(target=collector.start, args=(stop,))
worker.start()
...
stop.set()
worker.join()
db.close()
```

## Reconciling repositories

`imagereflector.repository.ImageRepositoryReconciler` takes four things:

- a tag store, such as `TagDatabase`;
- a function that receives an `ImageReference` and returns that repository's
  tags;
- an optional `EventRecorder`;
- an optional controller name.

The package does not contact registries itself. The listing function you pass
in does that work.

```python
from datetime import datetime, timezone
from imagereflector.database import TagDatabase
from imagereflector.repository import (
    EventRecorder, ImageRepository, ImageRepositoryReconciler, ImageRepositorySpec,
)

def list_tags(ref):
    return ["1.0.0", "1.1.0", "2.0.0-alpha"]

db = TagDatabase("/tmp/imagereflector-tags")
recorder = EventRecorder()
reconciler = ImageRepositoryReconciler(db, list_tags, recorder, "image-reflector")

repo = ImageRepository(
    name="podinfo",
    namespace="default",
    spec=ImageRepositorySpec(image="example.com/stefanprodan/podinfo",
                             exclusion_list=[r"-alpha$"]),
)

# The first call only adds the finalizer and asks to be requeued.
print(reconciler.reconcile(repo))   # ReconcileResult(requeue=True, ...)

result = reconciler.reconcile(repo, datetime.now(timezone.utc))
print(repo.is_ready())                           # True
print(repo.status.last_scan_result.latest_tags)  # ['1.1.0', '1.0.0']
print(result.requeue_after)                      # 0:05:00
print(recorder.events[-1])
```

### What one reconcile does

1. If the repository has a deletion timestamp, the finalizer is removed
   (`reconcile_delete`).
2. A suspended repository is left unchanged.
3. Otherwise, `should_scan` returns a `ScanDecision`. A scan happens in any
   of these cases:
   - the repository has never been scanned;
   - a reconcile-request annotation (`reconcile.fluxcd.io/requestedAt`) holds
     a value that has not been handled yet;
   - the canonical image name has changed;
   - the exclusion list has changed;
   - the database holds no tags for the repository;
   - less than one second of the scan interval is left.

   If none of these apply, the decision holds the time left until the next
   scan.
4. After a successful reconcile:
   - the `Ready` condition is `True`, with a message giving the tag count and
     checksum;
   - the result's `requeue_after` is the time until the next scan;
   - one event is recorded on the recorder.
5. When the image name is invalid, the repository is marked `Stalled` and
   not-ready. No error is raised.
6. When the scan or the database read fails, the `Ready` condition is set to
   `False` and a warning event is recorded. The error is then raised.
7. A repository that names a service account with a provider other than
   `generic` is always marked `Stalled`. The package has no way to enable
   per-object workload identity.

### Helpers in `imagereflector.repository`

- `parse_image_reference(image, insecure)` returns the canonical
  `ImageReference` of an image name. Docker Hub names gain `index.docker.io`
  and `library/`. It raises `ValueError` for an invalid name.
- `filter_out_tags(tags, patterns)` drops every tag matched by any regular
  expression in `patterns`. It raises `ValueError` for a pattern that does
  not compile.
- `sort_tags_and_get_latest_tags(tags)` sorts the list in place in
  descending order and returns at most ten tags.
- `is_equal_slice_content(a, b)` compares two lists by length and
  membership.
- `notify(recorder, old_obj, new_obj, next_scan_msg)` records one event
  chosen from the `Ready` state before and after a reconcile. The event type
  is `Normal`, `Warning` or `Trace`.

## Feature gates

```python
from imagereflector import features

features.feature_gates()   # {'CacheSecretsAndConfigMaps': False}
features.enabled("CacheSecretsAndConfigMaps")   # False
features.disable("CacheSecretsAndConfigMaps")
```

`enabled` raises `KeyError` for a feature that is not supported. `disable`
ignores unknown features.

## What the package does not do

- It does not talk to a Kubernetes API server, and it does not watch for
  objects. You build the `ImageRepository` objects and call `reconcile`
  yourself.
- It has no registry client or authentication. Tag listing is left to the
  function you supply.
- It has no command-line program.