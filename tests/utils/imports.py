"""
Helpers shared by the bulk import tests.
"""


class CapturingPublisher:
    """Publisher stub that remembers every event in order."""

    def __init__(self):
        self.events = []

    def publish(self, topic, payload):
        self.events.append((topic, dict(payload)))

    @property
    def payloads(self):
        return [payload for _, payload in self.events]


def wait_for_import(worker, import_id, timeout=10):
    """Block until the worker has finished the given import, if it is still running."""
    handle = worker.get(import_id)
    if handle is not None:
        return handle.result(timeout=timeout)
    return None
