"""
VaultSession — the per-login state handed to every vault operation.

Entries that survive a round trip through jsonpickle go to ``_data`` and
may be persisted by the caller; anything else (connections, managers)
stays in ``_objects`` for the life of the process. The master key is in
neither: it sits in a private bytearray that is zeroed when replaced or
when the session is invalidated.
"""
import uuid
from typing import Any, Optional, Union
from datetime import datetime, timezone
from collections.abc import Iterator, Mapping, MutableMapping
import jsonpickle
from jsonpickle.unpickler import loadclass
from pydantic import BaseModel
from .conf import SESSION_ID, SESSION_KEY, SESSION_USER
from .exceptions import SessionStateError


class PydanticHandler(jsonpickle.handlers.BaseHandler):
    """Flatten pydantic models through their JSON dump."""

    def flatten(self, obj, data):
        data['__dict__'] = self.context.flatten(
            obj.model_dump(mode='json'), reset=False
        )
        return data

    def restore(self, obj):
        model = loadclass(obj['py/object'])
        return model.model_validate(
            self.context.restore(obj['__dict__'], reset=False)
        )

jsonpickle.handlers.registry.register(BaseModel, PydanticHandler, base=True)


_SCALARS = (type(None), bool, int, float, str, bytes, datetime, BaseModel)
_SEQUENCES = (list, tuple, set, frozenset)
_MISSING = object()


def is_persistable(value: Any) -> bool:
    """True when jsonpickle can restore ``value`` in another process."""
    if isinstance(value, _SCALARS):
        return True
    if isinstance(value, dict):
        return all(is_persistable(v) for v in value.values())
    if isinstance(value, _SEQUENCES):
        return all(is_persistable(v) for v in value)
    return False


def _zero(buffer: Optional[bytearray]) -> None:
    if buffer is not None:
        buffer[:] = bytes(len(buffer))


KeyMaterial = Union[bytes, bytearray, str]


class VaultSession(MutableMapping[str, Any]):
    """Dict-like session carrying the identity and the live master key."""

    __slots__ = (
        '_data', '_objects', '_key', '_id', '_user_id', '_new',
        '_created', '_logon', '_max_age', '_changed'
    )

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        new: bool = False,
        id: Optional[str] = None,
        identity: Optional[Any] = None,
        master_key: Optional[KeyMaterial] = None,
        max_age: Optional[int] = None
    ) -> None:
        self._data: dict[str, Any] = {}
        self._objects: dict[str, Any] = {}
        self._key: Optional[bytearray] = None
        self._max_age = max_age or None
        self._logon = datetime.now(timezone.utc)
        now = int(self._logon.timestamp())
        if data and self._expired(data.get('created'), now):
            data = None
        if data:
            self._data.update(data)
            self._id = data.get(SESSION_ID) or uuid.uuid4().hex
            self._user_id = data.get(SESSION_KEY)
            self._created = data.get('created') or now
            self._new = new
        else:
            self._id = id or uuid.uuid4().hex
            self._user_id = identity
            self._created = now
            self._new = True
        self._changed = bool(new)
        self._stamp()
        if master_key is not None:
            self.replace_master_key(master_key)

    def _expired(self, created: Optional[int], now: int) -> bool:
        return self._max_age is not None and now - (created or 0) > self._max_age

    def _stamp(self) -> None:
        self._data[SESSION_ID] = self._id
        self._data['created'] = self._created
        if self._user_id is not None:
            self._data[SESSION_KEY] = self._user_id

    def __repr__(self) -> str:
        return (
            f'<Keychain-Session [user:{self._user_id}, created:{self._created}, '
            f'master_key:{self.has_master_key}] '
            f'data={sorted(self._data)!r}, objects={sorted(self._objects)!r}>'
        )

    # --- master key ---

    @property
    def has_master_key(self) -> bool:
        return self._key is not None

    @property
    def master_key(self) -> bytes:
        """Live master key.

        Raises:
            SessionStateError: the session carries no key (not logged in,
                restored from storage, or invalidated).
        """
        if self._key is None:
            raise SessionStateError()
        return bytes(self._key)

    def replace_master_key(self, key: KeyMaterial) -> None:
        """Install ``key`` (raw or hex), zeroing the previous buffer in place."""
        fresh = bytearray.fromhex(key) if isinstance(key, str) else bytearray(key)
        _zero(self._key)
        self._key = fresh

    def clear_master_key(self) -> None:
        _zero(self._key)
        self._key = None

    # --- identity and lifecycle ---

    @property
    def new(self) -> bool:
        return self._new

    @property
    def session_id(self) -> str:
        return self._id

    @property
    def identity(self) -> Optional[Any]:
        return self._user_id

    @property
    def user_id(self) -> Optional[int]:
        return self._user_id

    @property
    def user(self) -> Optional[dict]:
        """Public summary of the logged-in user."""
        return self._data.get(SESSION_USER)

    @property
    def is_authenticated(self) -> bool:
        return self._user_id is not None

    @property
    def created(self) -> int:
        return self._created

    @property
    def logon_time(self) -> datetime:
        return self._logon

    @property
    def max_age(self) -> Optional[int]:
        return self._max_age

    @property
    def empty(self) -> bool:
        return not self._data and not self._objects

    @property
    def is_changed(self) -> bool:
        return self._changed

    @is_changed.setter
    def is_changed(self, value: bool) -> None:
        self._changed = value

    def session_data(self) -> dict:
        return self._data

    def session_objects(self) -> dict:
        return self._objects

    def invalidate(self) -> None:
        """Log out: zero the key, forget the user and drop every entry."""
        self.clear_master_key()
        self._user_id = None
        self._data = {}
        self._objects = {}
        self._changed = True

    # --- mapping protocol ---

    def __getitem__(self, key: str) -> Any:
        if key in self._objects:
            return self._objects[key]
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if is_persistable(value):
            self._objects.pop(key, None)
            self._data[key] = value
            self._changed = True
        else:
            # process-local, never persisted
            self._data.pop(key, None)
            self._objects[key] = value

    def __delitem__(self, key: str) -> None:
        found = self._objects.pop(key, _MISSING) is not _MISSING
        if key in self._data:
            del self._data[key]
            self._changed = True
        elif not found:
            raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        return key in self._data or key in self._objects

    def __iter__(self) -> Iterator[str]:
        yield from self._data
        yield from (k for k in self._objects if k not in self._data)

    def __len__(self) -> int:
        return len(self._data.keys() | self._objects.keys())

    # --- persistence ---

    def encode(self, obj: Any = None) -> str:
        """Serialize ``obj`` (the persistable entries by default) with jsonpickle.

        Raises:
            RuntimeError: jsonpickle could not encode the value.
        """
        try:
            return jsonpickle.encode(self._data if obj is None else obj)
        except Exception as err:
            raise RuntimeError(err) from err

    def decode(self, key: str) -> Any:
        """Decode an entry previously stored as ``encode()`` output.

        Returns None when ``key`` is absent.

        Raises:
            RuntimeError: the stored value is not valid jsonpickle.
        """
        if key not in self._data:
            return None
        try:
            return jsonpickle.decode(self._data[key])
        except Exception as err:
            raise RuntimeError(err) from err

    @classmethod
    def restore(cls, payload: str, max_age: Optional[int] = None) -> "VaultSession":
        """Rebuild a session from ``encode()`` output, without a master key."""
        try:
            data = jsonpickle.decode(payload)
        except Exception as err:
            raise RuntimeError(err) from err
        return cls(data=data, max_age=max_age)
