from __future__ import annotations
import os
import json
import time
import queue
import struct
import logging
import threading
import dill
import jsonschema
from enum import Enum, StrEnum
from fnmatch import fnmatch
from collections.abc import Iterable, Mapping
from typing import Any, Literal, TypeAlias

from prometheus_client import Counter, Histogram
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer


logger = logging.getLogger(__name__)

RawValue: TypeAlias = str | int | float
Attributes: TypeAlias = "Mapping[str, RawValue | Value]"
DictConfig: TypeAlias = dict[str, Any]

ENABLED = "enabled"
TRAFFIC_ATTRIBUTE = "traffic"
CUSTOM_ATTRIBUTE = "custom"


# MurmurHash3 x86_32 constants.
_M32 = 0xFFFFFFFF
_C1 = 0xCC9E2D51
_C2 = 0x1B873593


def murmur3_32(data: bytes, seed: int = 0) -> int:
    """
    MurmurHash3 x86_32 of the given bytes.

    The output must stay bit-exact with the reference implementation. Traffic
    buckets of every deployed toggle depend on it and a change here would
    silently move users in and out of gradual rollouts.
    """
    h = seed & _M32
    length = len(data)
    tail_index = length & ~3

    for (k,) in struct.iter_unpack("<I", data[:tail_index]):
        k = (k * _C1) & _M32
        k = ((k << 15) | (k >> 17)) & _M32
        k = (k * _C2) & _M32
        h ^= k
        h = ((h << 13) | (h >> 19)) & _M32
        h = (h * 5 + 0xE6546B64) & _M32

    tail = data[tail_index:]
    if tail:
        # 1 to 3 remaining bytes, little-endian.
        k = int.from_bytes(tail, "little")
        k = (k * _C1) & _M32
        k = ((k << 15) | (k >> 17)) & _M32
        k = (k * _C2) & _M32
        h ^= k

    # Finalization mix.
    h ^= length
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _M32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _M32
    h ^= h >> 16
    return h


def traffic_bucket(toggle_key: str, value: str) -> int:
    """
    Map a (toggle, value) pair to one of 100 buckets. The bucket only depends
    on the toggle key and the value so a user lands in the same bucket for a
    toggle no matter which audience or rule asks.
    """
    return murmur3_32(f"{toggle_key}_{value}".encode("utf-8")) % 100


def _number_str(n: int | float) -> str:
    if isinstance(n, float) and n.is_integer():
        return str(int(n))
    return str(n)


class ValueKind(Enum):
    STRING = "string"
    NUMBER = "number"


class Value:
    """
    A context attribute value. Either a string or a number, never both.
    """

    __slots__ = ("kind", "_raw")
    kind: ValueKind
    _raw: RawValue

    def __init__(self, raw: RawValue):
        # bool is an int subclass but has no meaning as an attribute value.
        if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
            raise TypeError(f"attribute value must be a string, int or float, not {type(raw).__name__}")
        self.kind = ValueKind.STRING if isinstance(raw, str) else ValueKind.NUMBER
        self._raw = raw

    @staticmethod
    def of(v: RawValue | Value) -> Value:
        return v if isinstance(v, Value) else Value(v)

    def as_string(self) -> str:
        if self.kind is ValueKind.STRING:
            return self._raw  # type: ignore[return-value]
        return _number_str(self._raw)

    def as_number(self) -> float:
        """
        Numeric form of the value. Strings are parsed and raise ValueError
        when they don't hold a number.
        """
        return float(self._raw)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Value):
            return NotImplemented
        return self.kind is other.kind and self._raw == other._raw

    def __hash__(self) -> int:
        return hash((self.kind, self._raw))

    def __repr__(self) -> str:
        return f"Value({self._raw!r})"


class Context:
    """
    Attributes of a single evaluation request. user_id is mandatory and the
    traffic attribute defaults to it.
    """

    __slots__ = ("user_id", "_attributes", "_folded")

    def __init__(self, user_id: str, attributes: Attributes | None = None):
        if not isinstance(user_id, str):
            raise TypeError(f"user_id must be a string, not {type(user_id).__name__}")
        self.user_id = user_id
        self._attributes: dict[str, Value] = {}
        self._folded: dict[str, Value] = {}
        self.set("user_id", user_id)
        self.set(TRAFFIC_ATTRIBUTE, user_id)
        for name, value in (attributes or {}).items():
            self.set(name, value)

    @staticmethod
    def from_attributes(attributes: Attributes) -> Context:
        if not isinstance(attributes, Mapping):
            raise TypeError(f"attributes must be a mapping, not {type(attributes).__name__}")
        if "user_id" not in attributes:
            raise TypeError("attributes must contain user_id")
        user_id = attributes["user_id"]
        if isinstance(user_id, Value):
            user_id = user_id.as_string()
        return Context(user_id, {k: v for k, v in attributes.items() if k != "user_id"})  # type: ignore[arg-type]

    def set(self, name: str, value: RawValue | Value) -> Context:
        if not isinstance(name, str):
            raise TypeError(f"attribute name must be a string, not {type(name).__name__}")
        v = Value.of(value)
        self._attributes[name] = v
        self._folded[name.casefold()] = v
        return self

    def get(self, name: str, case_insensitive: bool = True) -> Value | None:
        if case_insensitive:
            return self._folded.get(name.casefold())
        return self._attributes.get(name)

    def __contains__(self, name: object) -> bool:
        # Same lookup as get() with its default, ignoring case.
        return isinstance(name, str) and self.get(name) is not None

    def __repr__(self) -> str:
        return f"Context({self.user_id!r}, {self._attributes!r})"


class Operator(StrEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GT = "gt"
    LT = "lt"
    CONTAINS = "contains"
    IN = "in"
    BETWEEN = "between"
    TRAFFIC = "traffic"


Precompiled: TypeAlias = frozenset[str] | tuple[float, float] | float


def _parse_range(s: str) -> tuple[float, float]:
    parts = s.split(",")
    if len(parts) != 2:
        raise ValueError(f"expected exactly two comma separated numbers, got {s!r}")
    return float(parts[0]), float(parts[1])


def _parse_set(s: str) -> frozenset[str]:
    return frozenset(p.strip().casefold() for p in s.split(","))


def _in_scan(s: str, needle: str) -> bool:
    needle = needle.casefold()
    return any(p.strip().casefold() == needle for p in s.split(","))


class Rule:
    """
    A single attribute/operator/value predicate.

    operator is None when the configured operator name is not one of the
    supported operators. Such a rule never matches.
    """

    __slots__ = (
        "id",
        "toggle_key",
        "attribute",
        "custom_attribute",
        "operator",
        "operator_name",
        "value",
        "precompiled",
    )
    id: str
    toggle_key: str
    attribute: str
    custom_attribute: str | None
    operator: Operator | None
    operator_name: str
    value: str
    precompiled: Precompiled | None

    def __init__(
        self,
        id: str,
        attribute: str,
        operator: str,
        value: str,
        custom_attribute: str | None = None,
        toggle_key: str = "",
    ):
        self.id = id
        self.toggle_key = toggle_key
        self.attribute = attribute
        self.custom_attribute = custom_attribute
        self.operator_name = operator
        try:
            self.operator = Operator(operator)
        except ValueError:
            self.operator = None
        self.value = value
        self.precompiled = None

    @property
    def effective_attribute(self) -> str:
        if self.attribute == CUSTOM_ATTRIBUTE:
            return self.custom_attribute or ""
        return self.attribute

    def prepare(self):
        """
        Parse the raw value into its ready to evaluate form. This is only an
        optimization, a rule that was never prepared evaluates the same way.
        """
        match self.operator:
            case Operator.BETWEEN:
                parse = _parse_range
            case Operator.IN:
                parse = _parse_set
            case Operator.GT | Operator.LT | Operator.TRAFFIC:
                parse = float
            case _:
                return
        try:
            self.precompiled = parse(self.value)
        except ValueError:
            logger.warning("rule %s of toggle %s has invalid %s value %r", self.id, self.toggle_key, self.operator_name, self.value)
            self.precompiled = None

    def __repr__(self) -> str:
        return f"Rule({self.id!r}, {self.effective_attribute!r} {self.operator_name} {self.value!r})"


class RuleEvaluator:
    """
    Decides whether a single rule matches a context. The evaluator holds no
    mutable state and is safe to share between threads.

    A rule that cannot be evaluated (missing attribute, unknown operator,
    values that don't parse as numbers) does not match. Faults never leave
    evaluate.
    """

    __slots__ = ("case_insensitive_attributes", "log_errors")

    def __init__(self, case_insensitive_attributes: bool = True, log_errors: bool = False):
        self.case_insensitive_attributes = case_insensitive_attributes
        self.log_errors = log_errors

    def evaluate(self, rule: Rule, context: Context) -> bool:
        attribute = rule.effective_attribute
        actual = context.get(attribute, self.case_insensitive_attributes)
        if actual is None:
            return False
        try:
            if attribute == TRAFFIC_ATTRIBUTE or rule.operator is Operator.TRAFFIC:
                actual = Value(traffic_bucket(rule.toggle_key, actual.as_string()))
            return self._match(rule, actual)
        except (ValueError, TypeError, ArithmeticError):
            if self.log_errors:
                logger.debug("rule %s of toggle %s failed to evaluate", rule.id, rule.toggle_key, exc_info=True)
            return False

    def _match(self, rule: Rule, actual: Value) -> bool:
        match rule.operator:
            case Operator.EQUALS:
                return actual.as_string() == rule.value
            case Operator.NOT_EQUALS:
                return actual.as_string() != rule.value
            case Operator.GT:
                return actual.as_number() > self._number(rule)
            case Operator.LT | Operator.TRAFFIC:
                # Traffic compares the bucket against the rollout percentage.
                return actual.as_number() < self._number(rule)
            case Operator.CONTAINS:
                return rule.value.casefold() in actual.as_string().casefold()
            case Operator.IN:
                if rule.precompiled is not None:
                    return actual.as_string().casefold() in rule.precompiled  # type: ignore[operator]
                return _in_scan(rule.value, actual.as_string())
            case Operator.BETWEEN:
                if rule.precompiled is not None:
                    lo, hi = rule.precompiled  # type: ignore[misc]
                else:
                    lo, hi = _parse_range(rule.value)
                return lo <= actual.as_number() <= hi
            case _:
                if self.log_errors:
                    logger.debug("rule %s of toggle %s has unsupported operator %r", rule.id, rule.toggle_key, rule.operator_name)
                return False

    @staticmethod
    def _number(rule: Rule) -> float:
        if rule.precompiled is not None:
            return rule.precompiled  # type: ignore[return-value]
        return float(rule.value)


class Audience:
    __slots__ = ("id", "name", "rules")
    id: str
    name: str
    rules: tuple[Rule, ...]

    def __init__(self, id: str, name: str, rules: Iterable[Rule] = ()):
        self.id = id
        self.name = name
        self.rules = tuple(rules)

    def matches(self, evaluator: RuleEvaluator, context: Context) -> bool:
        # all() stops at the first rule that doesn't match.
        return all(evaluator.evaluate(rule, context) for rule in self.rules)


class Toggle:
    __slots__ = ("id", "key", "name", "description", "status", "audiences")
    id: str
    key: str
    name: str
    description: str
    status: str
    audiences: tuple[Audience, ...]

    def __init__(
        self,
        id: str,
        key: str,
        status: str,
        audiences: Iterable[Audience] = (),
        name: str = "",
        description: str = "",
    ):
        self.id = id
        self.key = key
        self.status = status
        self.audiences = tuple(audiences)
        self.name = name
        self.description = description

    @property
    def enabled(self) -> bool:
        return self.status == ENABLED

    def eval(self, evaluator: RuleEvaluator, context: Context) -> Audience | None:
        """
        Return the first audience that grants access or None. Status is not
        checked here.
        """
        for audience in self.audiences:
            if audience.matches(evaluator, context):
                return audience
        return None


class FlagyardError(Exception):
    pass


class ToggleLoadError(FlagyardError):
    """
    Loading toggle configuration failed. The live configuration is unchanged.
    """


class ToggleDirectoryNotFoundError(ToggleLoadError):
    pass


class NoToggleFilesError(ToggleLoadError):
    pass


class ToggleFileError(ToggleLoadError):
    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class ToggleDocumentError(ToggleLoadError):
    def __init__(self, index: int, message: str):
        super().__init__(f"toggle document {index}: {message}")
        self.index = index


class NotFoundError(FlagyardError, LookupError):
    pass


class ToggleNotFoundError(NotFoundError):
    pass


class AudienceNotFoundError(NotFoundError):
    pass


class RuleNotFoundError(NotFoundError):
    pass


with open(os.path.join(os.path.dirname(__file__), "toggle_schema.json")) as f:
    _toggle_schema = json.load(f)


def _build_toggle(doc: DictConfig) -> Toggle:
    """
    Validate a toggle document and build a prepared toggle from it.
    """
    jsonschema.validate(doc, _toggle_schema)
    key = doc["key"]
    audiences = []
    for a in doc.get("audiences", []):
        rules = []
        for r in a.get("rules", []):
            value = r["value"]
            if not isinstance(value, str):
                value = _number_str(value)
            rule = Rule(
                id=r["id"],
                attribute=r["attribute"],
                operator=r["operator"],
                value=value,
                custom_attribute=r.get("customAttribute"),
                toggle_key=key,
            )
            rule.prepare()
            rules.append(rule)
        audiences.append(Audience(a["id"], a["name"], rules))
    return Toggle(
        id=doc["id"],
        key=key,
        status=doc["status"],
        audiences=audiences,
        name=doc.get("name", ""),
        description=doc.get("description", ""),
    )


class ToggleSnapshot:
    """
    A complete, prepared set of toggles. Snapshots are never modified after
    they are built. Reloading builds a new one.
    """

    __slots__ = ("toggles",)
    toggles: dict[str, Toggle]

    def __init__(self, toggles: dict[str, Toggle] | None = None):
        self.toggles = toggles if toggles is not None else {}

    @staticmethod
    def from_bytes(b: bytes) -> ToggleSnapshot:
        obj = dill.loads(b)
        assert isinstance(obj, ToggleSnapshot)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_dicts(docs: Iterable[DictConfig]) -> ToggleSnapshot:
        """
        Build a snapshot from toggle documents. Raises ToggleDocumentError for
        invalid documents and duplicate toggle keys.
        """
        toggles: dict[str, Toggle] = {}
        for i, doc in enumerate(docs):
            try:
                toggle = _build_toggle(doc)
            except jsonschema.ValidationError as e:
                raise ToggleDocumentError(i, f"invalid toggle: {e.message}") from e
            if toggle.key in toggles:
                raise ToggleDocumentError(i, f"duplicate toggle key {toggle.key!r}")
            toggles[toggle.key] = toggle
        return ToggleSnapshot(toggles)

    @staticmethod
    def from_directory(path: str, pattern: str = "*.json") -> ToggleSnapshot:
        """
        Build a snapshot from every file in the directory whose name matches
        pattern. Subdirectories are not scanned.
        """
        if not os.path.isdir(path):
            raise ToggleDirectoryNotFoundError(f"toggle directory not found: {path}")

        with os.scandir(path) as it:
            files = sorted(e.path for e in it if e.is_file() and fnmatch(e.name, pattern))
        if not files:
            raise NoToggleFilesError(f"no toggle files matching {pattern!r} in {path}")

        toggles: dict[str, Toggle] = {}
        for file in files:
            try:
                with open(file, encoding="utf-8") as f:
                    doc = json.load(f)
                toggle = _build_toggle(doc)
            except jsonschema.ValidationError as e:
                raise ToggleFileError(file, f"invalid toggle: {e.message}") from e
            except (OSError, ValueError) as e:
                raise ToggleFileError(file, f"failed to load toggle: {e}") from e
            if toggle.key in toggles:
                raise ToggleFileError(file, f"duplicate toggle key {toggle.key!r}")
            toggles[toggle.key] = toggle
        return ToggleSnapshot(toggles)


def _env_bool(s: str) -> bool:
    v = s.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"invalid boolean {s!r}")


class StoreOptions:
    """
    Configuration of a ToggleStore.

    toggles_path: Directory holding the toggle files.
    file_pattern: Glob matched against file names in toggles_path.
    case_insensitive_attributes: Whether rule attributes are looked up in the
        context ignoring case.
    reload_debounce_seconds: Quiet period after the last file change before
        the directory is re-read.
    log_rule_errors: Log rules that fail to evaluate at debug level.
    """

    __slots__ = (
        "toggles_path",
        "file_pattern",
        "case_insensitive_attributes",
        "reload_debounce_seconds",
        "log_rule_errors",
    )

    _env_prefix = "FLAGYARD_"

    def __init__(
        self,
        toggles_path: str | None = None,
        file_pattern: str = "*.json",
        case_insensitive_attributes: bool = True,
        reload_debounce_seconds: float = 0.1,
        log_rule_errors: bool = False,
    ):
        if reload_debounce_seconds < 0:
            raise ValueError("reload_debounce_seconds must not be negative")
        self.toggles_path = toggles_path
        self.file_pattern = file_pattern
        self.case_insensitive_attributes = case_insensitive_attributes
        self.reload_debounce_seconds = reload_debounce_seconds
        self.log_rule_errors = log_rule_errors

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> StoreOptions:
        """
        Build options from FLAGYARD_* environment variables. Unset variables
        keep their defaults.
        """
        env = os.environ if environ is None else environ
        p = StoreOptions._env_prefix
        kwargs: dict[str, Any] = {}
        if p + "TOGGLES_PATH" in env:
            kwargs["toggles_path"] = env[p + "TOGGLES_PATH"]
        if p + "FILE_PATTERN" in env:
            kwargs["file_pattern"] = env[p + "FILE_PATTERN"]
        if p + "CASE_INSENSITIVE_ATTRIBUTES" in env:
            kwargs["case_insensitive_attributes"] = _env_bool(env[p + "CASE_INSENSITIVE_ATTRIBUTES"])
        if p + "RELOAD_DEBOUNCE_SECONDS" in env:
            kwargs["reload_debounce_seconds"] = float(env[p + "RELOAD_DEBOUNCE_SECONDS"])
        if p + "LOG_RULE_ERRORS" in env:
            kwargs["log_rule_errors"] = _env_bool(env[p + "LOG_RULE_ERRORS"])
        return StoreOptions(**kwargs)


class ToggleEvaluation:
    """
    The result of evaluating a toggle.
    """

    __slots__ = ("toggle", "user_id", "allowed", "reason", "audience")
    toggle: str
    user_id: str
    allowed: bool
    reason: Literal["not_found", "disabled", "audience", "no_match"]
    # Id of the audience that granted access, empty otherwise.
    audience: str

    def __repr__(self) -> str:
        return f"ToggleEvaluation({self.toggle!r}, {self.user_id!r}, allowed={self.allowed}, reason={self.reason!r})"


_prom_eval_duration = Histogram(
    "flagyard_evaluation_seconds",
    "Toggle evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["toggle", "reason"],
)
_prom_reloads = Counter(
    "flagyard_reloads",
    "Toggle directory reloads",
    labelnames=["outcome"],
)


class ToggleStore:
    """
    Holds the live toggle snapshot and evaluates toggles against it.

    Evaluation and introspection are thread-safe and take no locks. Each call
    reads the current snapshot once so it sees either the configuration from
    before a reload or the one after it, never a mix. Reloads are serialized.
    """

    def __init__(self, options: StoreOptions | None = None):
        self._options = options or StoreOptions()
        self._evaluator = RuleEvaluator(
            case_insensitive_attributes=self._options.case_insensitive_attributes,
            log_errors=self._options.log_rule_errors,
        )
        self._reload_mu = threading.Lock()
        self._snapshot = ToggleSnapshot()
        self._watcher: ToggleWatcher | None = None
        # Guards _watcher. stop() joins the reload thread, so this cannot be _reload_mu.
        self._watch_mu = threading.Lock()

    @property
    def options(self) -> StoreOptions:
        return self._options

    @property
    def snapshot(self) -> ToggleSnapshot:
        return self._snapshot

    def load_snapshot(self, snapshot: ToggleSnapshot):
        """
        Publish the given snapshot. load_snapshot is thread-safe.
        """
        with self._reload_mu:
            self._snapshot = snapshot

    def reload(self, directory: str | None = None) -> ToggleSnapshot:
        """
        Re-read the toggle directory and publish the result. On failure a
        ToggleLoadError is raised and the current snapshot stays live.
        """
        directory = directory if directory is not None else self._options.toggles_path
        if directory is None:
            raise ValueError("no toggle directory given and toggles_path is not configured")
        with self._reload_mu:
            try:
                snapshot = ToggleSnapshot.from_directory(directory, self._options.file_pattern)
            except ToggleLoadError:
                _prom_reloads.labels(outcome="failure").inc()
                raise
            self._snapshot = snapshot
        _prom_reloads.labels(outcome="success").inc()
        logger.info("loaded %d toggles from %s", len(snapshot.toggles), directory)
        return snapshot

    def watch(self) -> ToggleWatcher:
        """
        Start reloading whenever files in toggles_path change.
        """
        with self._watch_mu:
            if self._watcher is None:
                if self._options.toggles_path is None:
                    raise ValueError("toggles_path is not configured")
                watcher = ToggleWatcher(
                    self,
                    self._options.toggles_path,
                    pattern=self._options.file_pattern,
                    debounce_seconds=self._options.reload_debounce_seconds,
                )
                watcher.start()
                self._watcher = watcher
            return self._watcher

    def stop(self):
        with self._watch_mu:
            if self._watcher is not None:
                self._watcher.stop()
                self._watcher = None

    def __enter__(self) -> ToggleStore:
        return self

    def __exit__(self, *exc):
        self.stop()

    # Evaluation

    @staticmethod
    def _as_context(context: Context | Attributes) -> Context:
        if isinstance(context, Context):
            return context
        return Context.from_attributes(context)

    def evaluate(self, key: str, context: Context | Attributes) -> ToggleEvaluation:
        """
        Evaluate the toggle and explain the outcome. Unknown and disabled
        toggles are not allowed. evaluate is thread-safe.
        """
        ctx = self._as_context(context)
        start = time.perf_counter()
        e = ToggleEvaluation()
        e.toggle = key
        e.user_id = ctx.user_id
        e.audience = ""
        toggle = self._snapshot.toggles.get(key)
        if toggle is None:
            logger.warning("toggle not found: %s", key)
            e.allowed = False
            e.reason = "not_found"
        elif not toggle.enabled:
            logger.warning("toggle is disabled: %s", key)
            e.allowed = False
            e.reason = "disabled"
        else:
            audience = toggle.eval(self._evaluator, ctx)
            if audience is None:
                e.allowed = False
                e.reason = "no_match"
            else:
                e.allowed = True
                e.reason = "audience"
                e.audience = audience.id
        # Unknown keys come from callers, keep them out of the label set.
        toggle_label = "" if e.reason == "not_found" else key
        _prom_eval_duration.labels(toggle=toggle_label, reason=e.reason).observe(time.perf_counter() - start)
        return e

    def is_allowed(self, key: str, context: Context | Attributes) -> bool:
        """
        Whether the toggle is on for the context. is_allowed is thread-safe.

        key: The toggle key.
        context: A Context or a mapping of attributes containing user_id.
        """
        return self.evaluate(key, context).allowed

    # Introspection

    @staticmethod
    def _find_toggle(snapshot: ToggleSnapshot, key: str) -> Toggle:
        toggle = snapshot.toggles.get(key)
        if toggle is None:
            raise ToggleNotFoundError(f"toggle {key!r} does not exist")
        return toggle

    @classmethod
    def _find_audience(cls, snapshot: ToggleSnapshot, key: str, audience_id: str) -> Audience:
        for a in cls._find_toggle(snapshot, key).audiences:
            if a.id == audience_id:
                return a
        raise AudienceNotFoundError(f"audience {audience_id!r} does not exist in toggle {key!r}")

    @classmethod
    def _find_rule(cls, snapshot: ToggleSnapshot, key: str, audience_id: str, rule_id: str) -> Rule:
        for r in cls._find_audience(snapshot, key, audience_id).rules:
            if r.id == rule_id:
                return r
        raise RuleNotFoundError(f"rule {rule_id!r} does not exist in audience {audience_id!r} of toggle {key!r}")

    def toggle_exists(self, key: str) -> bool:
        return key in self._snapshot.toggles

    def audience_exists(self, key: str, audience_id: str) -> bool:
        try:
            self._find_audience(self._snapshot, key, audience_id)
        except NotFoundError:
            return False
        return True

    def rule_exists(self, key: str, audience_id: str, rule_id: str) -> bool:
        try:
            self._find_rule(self._snapshot, key, audience_id, rule_id)
        except NotFoundError:
            return False
        return True

    def get_toggle_status(self, key: str) -> bool:
        return self._find_toggle(self._snapshot, key).enabled

    def toggle_count(self) -> int:
        return len(self._snapshot.toggles)

    def audience_count(self, key: str) -> int:
        return len(self._find_toggle(self._snapshot, key).audiences)

    def rule_count(self, key: str, audience_id: str) -> int:
        return len(self._find_audience(self._snapshot, key, audience_id).rules)

    def toggle_keys(self) -> list[str]:
        return list(self._snapshot.toggles)

    def audience_ids(self, key: str) -> list[str]:
        return [a.id for a in self._find_toggle(self._snapshot, key).audiences]

    def rule_ids(self, key: str, audience_id: str) -> list[str]:
        return [r.id for r in self._find_audience(self._snapshot, key, audience_id).rules]

    def get_toggle(self, key: str) -> Toggle:
        return self._find_toggle(self._snapshot, key)

    def get_audience(self, key: str, audience_id: str) -> Audience:
        return self._find_audience(self._snapshot, key, audience_id)

    def get_rule(self, key: str, audience_id: str, rule_id: str) -> Rule:
        return self._find_rule(self._snapshot, key, audience_id, rule_id)


class _ToggleFileEventHandler(FileSystemEventHandler):
    """
    Forwards changes of matching toggle files to the watcher queue.
    """

    _event_types = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}

    def __init__(self, pattern: str, events: queue.Queue):
        self._pattern = pattern
        self._events = events

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory or event.event_type not in self._event_types:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and fnmatch(os.path.basename(os.fsdecode(p)), self._pattern) for p in paths):
            self._events.put(event.event_type)


_STOP = object()


class ToggleWatcher:
    """
    Reloads a store when files in its toggle directory change.

    File system notifications only feed a queue. A single worker thread waits
    for the queue to stay quiet for debounce_seconds before reloading, so a
    burst of events (editors writing a file in several steps, a deploy
    replacing many files) results in one reload of fully written files.
    """

    def __init__(
        self,
        store: ToggleStore,
        directory: str,
        pattern: str = "*.json",
        debounce_seconds: float = 0.1,
    ):
        self._store = store
        self._directory = directory
        self._debounce_seconds = debounce_seconds
        self._events: queue.Queue = queue.Queue()
        self._handler = _ToggleFileEventHandler(pattern, self._events)
        self._observer: Any = None
        self._worker_thread: threading.Thread | None = None

    def start(self):
        if self._worker_thread is not None:
            return
        observer = Observer()
        observer.schedule(self._handler, self._directory, recursive=False)
        observer.start()
        self._observer = observer
        self._worker_thread = threading.Thread(target=self._worker, name="flagyard-reload", daemon=True)
        self._worker_thread.start()
        logger.info("watching %s for toggle changes", self._directory)

    def stop(self):
        if self._worker_thread is None:
            return
        self._observer.stop()
        self._observer.join()
        self._events.put(_STOP)
        self._worker_thread.join()
        self._observer = None
        self._worker_thread = None

    def notify(self):
        """
        Report a change as if it came from the file system.
        """
        self._events.put("notify")

    def _worker(self):
        while True:
            if self._events.get() is _STOP:
                return
            while True:
                try:
                    item = self._events.get(timeout=self._debounce_seconds)
                except queue.Empty:
                    break
                if item is _STOP:
                    return
            logger.info("toggle files changed in %s, reloading", self._directory)
            try:
                self._store.reload(self._directory)
            except Exception:
                logger.exception("Error reloading toggles from %s", self._directory)
