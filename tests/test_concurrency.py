"""Concurrency tests: producers on all three streams plus a query thread."""

import threading
import time

import numpy as np

from lltrack import LowLatencyTracker, PoseStatus, TrackingConfig
from lltrack.estimation.rotation import quaternion_exp

DURATION_S = 1.0


def test_concurrent_ingestion_and_queries():
    """Test that concurrent producers and queries never deadlock or return non-finite poses."""
    tracker = LowLatencyTracker(TrackingConfig())
    stop = threading.Event()
    errors: list[BaseException] = []
    clock_start = time.monotonic()

    def now() -> float:
        return time.monotonic() - clock_start

    def guarded(target):
        def run():
            try:
                target()
            except BaseException as e:  # Collected and re-raised by the test
                errors.append(e)
                stop.set()

        return run

    def gyro_producer():
        rng = np.random.default_rng(1)
        while not stop.is_set():
            tracker.on_gyro_data_updated(now(), rng.normal(0.0, 0.5, 3))
            time.sleep(0.001)

    def accel_producer():
        rng = np.random.default_rng(2)
        while not stop.is_set():
            tracker.on_accelerometer_data_updated(now(), np.array([0.0, 9.81, 0.0]) + rng.normal(0.0, 0.1, 3))
            time.sleep(0.001)

    def vi_producer():
        rng = np.random.default_rng(3)
        while not stop.is_set():
            orientation = quaternion_exp(rng.normal(0.0, 0.05, 3))
            tracker.on_arkit_data_updated(now(), rng.normal(0.0, 0.01, 3), orientation)
            time.sleep(0.02)

    results = {"ready": 0, "total": 0}

    def consumer():
        while not stop.is_set():
            estimate = tracker.get_pose(now() + 0.016)
            results["total"] += 1
            if estimate.status != PoseStatus.NOT_READY:
                results["ready"] += 1
                assert np.all(np.isfinite(estimate.position))
                assert np.all(np.isfinite(estimate.orientation))
                assert abs(np.linalg.norm(estimate.orientation) - 1.0) < 1e-6
            time.sleep(0.002)

    def toggler():
        while not stop.is_set():
            tracker.set_filtering_gyro(False)
            tracker.set_filtering_accelerometer(False)
            time.sleep(0.05)
            tracker.activate()
            time.sleep(0.05)

    threads = [
        threading.Thread(target=guarded(fn), daemon=True)
        for fn in (gyro_producer, accel_producer, vi_producer, consumer, toggler)
    ]
    for thread in threads:
        thread.start()

    time.sleep(DURATION_S)
    stop.set()
    for thread in threads:
        thread.join(timeout=5.0)

    assert not any(thread.is_alive() for thread in threads), "a thread deadlocked"
    if errors:
        raise errors[0]
    assert results["total"] > 0
    assert results["ready"] > 0


def test_clear_while_ingesting():
    """Test that clear() from another thread does not break producers."""
    tracker = LowLatencyTracker(TrackingConfig())
    stop = threading.Event()
    clock_start = time.monotonic()

    def producer():
        while not stop.is_set():
            t = time.monotonic() - clock_start
            tracker.on_gyro_data_updated(t, np.zeros(3))
            tracker.on_arkit_data_updated(t, np.zeros(3), np.array([1.0, 0.0, 0.0, 0.0]))
            time.sleep(0.002)

    thread = threading.Thread(target=producer, daemon=True)
    thread.start()
    for _ in range(20):
        tracker.clear()
        tracker.get_pose(time.monotonic() - clock_start)
        time.sleep(0.005)
    stop.set()
    thread.join(timeout=5.0)

    assert not thread.is_alive()
    t = time.monotonic() - clock_start
    tracker.on_arkit_data_updated(t, np.zeros(3), np.array([1.0, 0.0, 0.0, 0.0]))
    assert tracker.get_pose(t).is_ready
