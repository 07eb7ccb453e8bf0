"""In-process metrics registry rendered in the Prometheus text format."""

from __future__ import annotations

from threading import Lock
from typing import Iterator, Sequence

LabelKey = tuple[str, ...]


def _number(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')
    return f'"{escaped}"'


class _Series:
    """One labelled time series of a metric family."""

    __slots__ = ("family", "key")

    def __init__(self, family: "_Family", key: LabelKey) -> None:
        self.family = family
        self.key = key

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"{self.family.name}: counters and gauges only increase via inc()")
        self.family._update(self.key, amount)

    def dec(self, amount: float = 1.0) -> None:
        if self.family.kind != "gauge":
            raise AttributeError(f"{self.family.name} is a {self.family.kind}; only gauges go down")
        if amount < 0:
            raise ValueError(f"{self.family.name}: dec() takes a non-negative amount")
        self.family._update(self.key, -amount)

    def set(self, value: float) -> None:
        if self.family.kind != "gauge":
            raise AttributeError(f"{self.family.name} is a {self.family.kind}; only gauges can be set")
        self.family._update(self.key, float(value), absolute=True)


class _Family:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names: LabelKey = tuple(label_names)
        self._values: dict[LabelKey, float] = {}
        self._guard = Lock()

    def _key(self, label_values: Sequence[object]) -> LabelKey:
        if len(label_values) != len(self.label_names):
            raise ValueError(
                f"{self.name} takes labels {list(self.label_names)}, got {len(label_values)} value(s)"
            )
        return tuple(str(item) for item in label_values)

    def _update(self, key: LabelKey, amount: float, *, absolute: bool = False) -> None:
        with self._guard:
            self._values[key] = amount if absolute else self._values.get(key, 0.0) + amount

    def labels(self, *label_values: object) -> _Series:
        return _Series(self, self._key(label_values))

    def value(self, *label_values: object) -> float:
        """Current value of the series, zero when it was never touched."""

        key = self._key(label_values)
        with self._guard:
            return self._values.get(key, 0.0)

    def reset(self) -> None:
        with self._guard:
            self._values.clear()

    def exposition(self) -> Iterator[str]:
        yield f"# HELP {self.name} {self.help_text}"
        yield f"# TYPE {self.name} {self.kind}"
        with self._guard:
            series = sorted(self._values.items())
        if not series and not self.label_names:
            series = [((), 0.0)]
        for key, value in series:
            labels = ",".join(f"{name}={_quote(item)}" for name, item in zip(self.label_names, key))
            suffix = f"{{{labels}}}" if labels else ""
            yield f"{self.name}{suffix} {_number(value)}"


class Counter(_Family):
    kind = "counter"

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)


class Gauge(_Family):
    kind = "gauge"

    def set(self, value: float) -> None:
        self.labels().set(value)


class MetricsRegistry:
    """Named metric families exported together at ``/metrics``."""

    def __init__(self) -> None:
        self._families: dict[str, _Family] = {}
        self._guard = Lock()

    def _add(self, family: _Family) -> _Family:
        with self._guard:
            if family.name in self._families:
                raise ValueError(f"duplicate metric name: {family.name}")
            self._families[family.name] = family
        return family

    def counter(self, name: str, help_text: str, *, label_names: Sequence[str] = ()) -> Counter:
        return self._add(Counter(name, help_text, label_names))  # type: ignore[return-value]

    def gauge(self, name: str, help_text: str, *, label_names: Sequence[str] = ()) -> Gauge:
        return self._add(Gauge(name, help_text, label_names))  # type: ignore[return-value]

    def reset(self) -> None:
        with self._guard:
            families = list(self._families.values())
        for family in families:
            family.reset()

    def render(self) -> str:
        with self._guard:
            families = sorted(self._families.values(), key=lambda family: family.name)
        body = [line for family in families for line in family.exposition()]
        return "\n".join(body) + "\n"


registry = MetricsRegistry()
