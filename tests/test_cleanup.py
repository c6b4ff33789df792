import os

import pytest
from fastapi import BackgroundTasks

from cleanup import ImageCleanup
from images import StorageError


@pytest.fixture
def cleanup(image_store, database):
    return ImageCleanup(image_store, database)


def break_deletes(monkeypatch, image_store, failing_url):
    original = image_store.delete

    def delete(url):
        if url == failing_url:
            raise StorageError("disk busy")
        return original(url)

    monkeypatch.setattr(image_store, "delete", delete)


def test_failed_urls_are_recorded(cleanup, image_store, make_png, monkeypatch):
    good = image_store.save(make_png(color=(1, 1, 1)))
    bad = image_store.save(make_png(color=(2, 2, 2)))
    break_deletes(monkeypatch, image_store, bad.url)

    assert cleanup.reconcile([good, bad]) == [bad.url]
    assert not os.path.exists(image_store.path_for(good.url))

    cleanup.reconcile([bad])
    pending = cleanup.pending()
    assert [(p["url"], p["attempts"]) for p in pending] == [(bad.url, 2)]


def test_retry_clears_recorded_failures(cleanup, image_store, png_bytes, monkeypatch):
    asset = image_store.save(png_bytes)
    break_deletes(monkeypatch, image_store, asset.url)
    cleanup.reconcile([asset])

    assert cleanup.retry_pending() == 0
    assert cleanup.pending()[0]["attempts"] == 2

    monkeypatch.undo()
    assert cleanup.retry_pending() == 1
    assert cleanup.pending() == []
    assert not os.path.exists(image_store.path_for(asset.url))


def test_reconcile_many_counts_failures(cleanup, image_store, make_png, monkeypatch):
    products = [[image_store.save(make_png(color=(i, i, i))).to_document()] for i in range(3)]
    break_deletes(monkeypatch, image_store, products[1][0]["url"])
    assert cleanup.reconcile_many(products + [[]]) == 1
    assert cleanup.reconcile_many([]) == 0


def test_schedule_defers_to_background_tasks(cleanup, image_store, png_bytes):
    asset = image_store.save(png_bytes)
    tasks = BackgroundTasks()
    cleanup.schedule(tasks, [asset])
    assert os.path.exists(image_store.path_for(asset.url))
    assert len(tasks.tasks) == 1
    task = tasks.tasks[0]
    task.func(*task.args, **task.kwargs)
    assert not os.path.exists(image_store.path_for(asset.url))
