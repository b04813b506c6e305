"""Writing and reading NSKeyedArchiver-format binary property lists.

A keyed archive stores an object graph rather than a plain dictionary. The
top-level ``$objects`` table starts with the ``$null`` placeholder, and every
dictionary, date and class description is a separate entry referenced by
``UID``. Only the subset needed for a flat dictionary of strings, numbers,
booleans and dates is supported.
"""

import plistlib
from datetime import datetime, timezone

from .errors import MetadataEncodingError

ARCHIVER = "NSKeyedArchiver"
ARCHIVER_VERSION = 100000
NULL = "$null"
REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)

_DICTIONARY_CLASS = {
    "$classname": "NSMutableDictionary",
    "$classes": ["NSMutableDictionary", "NSDictionary", "NSObject"],
}
_DATE_CLASS = {"$classname": "NSDate", "$classes": ["NSDate", "NSObject"]}


class _Archiver:
    def __init__(self):
        self.objects: list = [NULL]
        self._uniqued: dict[tuple[str, object], plistlib.UID] = {}
        self._classes: dict[str, plistlib.UID] = {}

    def _append(self, obj) -> plistlib.UID:
        self.objects.append(obj)
        return plistlib.UID(len(self.objects) - 1)

    def _class_ref(self, description: dict) -> plistlib.UID:
        name = description["$classname"]
        if name not in self._classes:
            self._classes[name] = self._append(description)
        return self._classes[name]

    def encode(self, value) -> plistlib.UID:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            date = {"NS.time": (value - REFERENCE_DATE).total_seconds()}
            uid = self._append(date)
            date["$class"] = self._class_ref(_DATE_CLASS)
            return uid
        if isinstance(value, (str, bool, int, float)):
            key = (type(value).__name__, value)
            if key not in self._uniqued:
                self._uniqued[key] = self._append(value)
            return self._uniqued[key]
        raise MetadataEncodingError(f"cannot archive {type(value).__name__} values")

    def encode_root(self, mapping: dict) -> plistlib.UID:
        root: dict = {}
        uid = self._append(root)
        root["NS.keys"] = [self.encode(str(k)) for k in mapping]
        root["NS.objects"] = [self.encode(v) for v in mapping.values()]
        root["$class"] = self._class_ref(_DICTIONARY_CLASS)
        return uid


def archive_dict(mapping: dict) -> bytes:
    """Encode a flat dictionary as a binary keyed archive.

    Raises:
        MetadataEncodingError: A value has an unsupported type
    """
    archiver = _Archiver()
    root = archiver.encode_root(mapping)
    archive = {
        "$archiver": ARCHIVER,
        "$version": ARCHIVER_VERSION,
        "$top": {"root": root},
        "$objects": archiver.objects,
    }
    try:
        return plistlib.dumps(archive, fmt=plistlib.FMT_BINARY, sort_keys=False)
    except (TypeError, OverflowError) as e:
        raise MetadataEncodingError(str(e)) from e


def unarchive_dict(data: bytes) -> dict:
    """Decode a keyed archive written by ``archive_dict``.

    Raises:
        MetadataEncodingError: The data is not a keyed archive of a dictionary
    """
    try:
        archive = plistlib.loads(data)
        objects = archive["$objects"]
        root = objects[archive["$top"]["root"].data]
        keys = [objects[uid.data] for uid in root["NS.keys"]]
        values = [objects[uid.data] for uid in root["NS.objects"]]
    except (plistlib.InvalidFileException, KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
        raise MetadataEncodingError(f"not a keyed archive: {e}") from e
    if archive.get("$archiver") != ARCHIVER:
        raise MetadataEncodingError("not a keyed archive: wrong $archiver")

    result = {}
    for key, value in zip(keys, values):
        if isinstance(value, dict) and "NS.time" in value:
            value = datetime.fromtimestamp(REFERENCE_DATE.timestamp() + value["NS.time"], tz=timezone.utc)
        result[key] = value
    return result
