"""
Tagged read cache for listing endpoints.

Entries are stored under a key together with a set of tags; revalidating a
tag evicts every entry carrying it. Writers (checkout, order updates) only
emit tag names, so they do not need to know which keys exist.
"""

import logging
import threading

log = logging.getLogger(__name__)


class TagCache:
    def __init__(self):
        self._entries = {}
        self._keys_by_tag = {}
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            entry = self._entries.get(key)
            return entry[0] if entry else default

    def set(self, key, value, tags=()):
        with self._lock:
            self._entries[key] = (value, tuple(tags))
            for tag in tags:
                self._keys_by_tag.setdefault(tag, set()).add(key)

    def get_or_set(self, key, loader, tags=()):
        value = self.get(key)
        if value is None:
            value = loader()
            self.set(key, value, tags)
        return value

    def revalidate_tag(self, tag):
        with self._lock:
            keys = self._keys_by_tag.pop(tag, set())
            for key in keys:
                entry = self._entries.pop(key, None)
                if not entry:
                    continue
                for other in entry[1]:
                    if other != tag:
                        self._keys_by_tag.get(other, set()).discard(key)
        log.debug("revalidated tag %s (%d entries)", tag, len(keys))
        return len(keys)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._keys_by_tag.clear()


cache = TagCache()


def revalidate_tags(*tags):
    for tag in tags:
        cache.revalidate_tag(tag)
