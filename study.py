"""Індикатори (built-in / pine) та runtime study, прив'язаного до графіка.

Study не є окремою upstream-сесією: усі його повідомлення ходять через id
батьківського графіка (`p[0]`) з id study у `p[1]`, тому роутинг робить
`ChartSession`. Графік володіє своїми study; study тримає лише зворотне
посилання на графік і не керує його життям.
"""

from __future__ import annotations

import concurrent.futures
import copy
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from periods import StudyPeriodsStore
from sessions import EventEmitter, EventHandler
from tv_errors import CriticalError, Detached, ProtocolError, StudyError
from tv_protocol import decompress_payload, is_compressed_payload
from tv_schema import (
    BUILTIN_INDICATORS,
    PINE_SCRIPT_TYPE,
    PRICES_SERIES,
    STRATEGY_SCRIPT_TYPE,
    STUDY_TURNAROUND,
    StrategyReport,
)
from utils import next_request_id

log = logging.getLogger("tv_connector.study")
if not log.handlers:
    log.addHandler(logging.NullHandler())

PINE_TYPES = {
    "Script": PINE_SCRIPT_TYPE,
    "StrategyScript": STRATEGY_SCRIPT_TYPE,
}

_PINE_VALUE_TYPES: Dict[str, Tuple[type, ...]] = {
    "integer": (int,),
    "float": (int, float),
    "bool": (bool,),
    "text": (str,),
    "source": (str,),
    "resolution": (str,),
    "session": (str,),
    "symbol": (str,),
    "time": (int,),
}


# ── Дескриптори індикаторів ──────────────────────────────────────────────────
class BuiltInIndicator:
    """Вбудований індикатор upstream, ідентифікований типом (`RSI@tv-basicstudies-1`)."""

    def __init__(self, type_: str, options: Optional[Mapping[str, Any]] = None, *, plots: Optional[List[str]] = None) -> None:
        defaults = BUILTIN_INDICATORS.get(type_)
        self.type = type_
        self._known = defaults is not None
        self.options: Dict[str, Any] = copy.deepcopy(defaults["inputs"]) if defaults else {}
        self.plots: List[str] = list(plots if plots is not None else (defaults["plots"] if defaults else []))
        for key, value in (options or {}).items():
            self.set_option(key, value, force=True)

    def __repr__(self) -> str:
        return f"<BuiltInIndicator {self.type}>"

    def set_option(self, key: str, value: Any, *, force: bool = False) -> None:
        """Перевизначає опцію; невідомі ключі дозволені лише з `force`."""

        if key in self.options:
            self.options[key] = value
            return
        lowered = {name.lower(): name for name in self.options}
        match = lowered.get(key.lower())
        if match is not None:
            self.options[match] = value
            return
        if not force and self._known:
            raise ValueError(f"Опція '{key}' недоступна для індикатора '{self.type}'")
        self.options[key] = value

    def build_inputs(self) -> Dict[str, Any]:
        return dict(self.options)

    def plot_names(self) -> Dict[int, str]:
        return dict(enumerate(self.plots))


@dataclass
class PineInput:
    """Один вхід pine-скрипта (`in_0`, `in_1`, ...)."""

    id: str
    name: str
    type: str
    value: Any
    inline: str = ""
    is_hidden: bool = False
    is_fake: bool = False
    options: List[Any] = field(default_factory=list)


class PineIndicator:
    """Pine-індикатор або стратегія: скомпільований скрипт + входи + карта плотів."""

    def __init__(
        self,
        pine_id: str,
        pine_version: str,
        script: str,
        *,
        inputs: Optional[Mapping[str, PineInput]] = None,
        plots: Optional[Mapping[str, str]] = None,
        description: str = "",
        short_description: str = "",
        type_: str = PINE_SCRIPT_TYPE,
    ) -> None:
        self.pine_id = pine_id
        self.pine_version = pine_version
        self.script = script
        self.inputs: Dict[str, PineInput] = {key: copy.copy(value) for key, value in (inputs or {}).items()}
        self.plots: Dict[str, str] = dict(plots or {})
        self.description = description
        self.short_description = short_description
        self.type = type_

    def __repr__(self) -> str:
        return f"<PineIndicator {self.pine_id}@{self.pine_version}>"

    def set_type(self, type_: str = "Script") -> None:
        """`Script` для індикатора, `StrategyScript` для стратегії."""

        self.type = PINE_TYPES.get(type_, type_)

    @property
    def is_strategy(self) -> bool:
        return self.type == STRATEGY_SCRIPT_TYPE

    def _find_input(self, key: str) -> PineInput:
        if key in self.inputs:
            return self.inputs[key]
        prefixed = f"in_{key}" if str(key).isdigit() else None
        if prefixed and prefixed in self.inputs:
            return self.inputs[prefixed]
        lowered = str(key).lower()
        for item in self.inputs.values():
            if lowered in (item.name.lower(), item.inline.lower()):
                return item
        raise KeyError(f"Вхід '{key}' не знайдено в індикаторі {self.pine_id}")

    def set_option(self, key: str, value: Any) -> None:
        item = self._find_input(key)
        expected = _PINE_VALUE_TYPES.get(item.type)
        if expected is not None:
            is_bool = isinstance(value, bool)
            if (item.type == "bool") != is_bool or not isinstance(value, expected):
                raise TypeError(f"Вхід '{item.name}' ({item.id}) очікує тип {item.type}, отримано {value!r}")
        if item.options and value not in item.options:
            raise ValueError(f"Значення {value!r} поза дозволеними для '{item.name}': {item.options}")
        item.value = value

    def build_inputs(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": self.script}
        if self.pine_id:
            payload["pineId"] = self.pine_id
        if self.pine_version:
            payload["pineVersion"] = self.pine_version
        for position, (input_id, item) in enumerate(self.inputs.items()):
            payload[input_id] = {
                "v": item.value if item.type != "color" else position,
                "f": item.is_fake,
                "t": item.type,
            }
        return payload

    def plot_names(self) -> Dict[int, str]:
        names: Dict[int, str] = {}
        for plot_id, title in self.plots.items():
            if plot_id.startswith("plot_") and plot_id[5:].isdigit():
                names[int(plot_id[5:])] = title
        return names


Indicator = Union[BuiltInIndicator, PineIndicator]


# ── Runtime ──────────────────────────────────────────────────────────────────
class StudyState(str, enum.Enum):
    CREATED = "created"
    ATTACHED = "attached"
    READY = "ready"
    DELETED = "deleted"


class Study:
    """Індикатор, прикріплений до графіка.

    Події: `ready`, `update`, `strategyReport`, `error`, `loading`.
    """

    def __init__(self, indicator: Indicator, *, study_id: Optional[str] = None) -> None:
        self.indicator = indicator
        self.study_id = study_id or f"st_{next_request_id()}"
        self.state = StudyState.CREATED
        self.chart: Any = None
        self.events = EventEmitter(self.study_id)
        self._store = StudyPeriodsStore()
        self._strategy_report: Optional[StrategyReport] = None
        self._graphics: Dict[str, Dict[Any, Any]] = {}

    def __repr__(self) -> str:
        return f"<Study {self.study_id} {self.state.value}>"

    # -- підписки ---------------------------------------------------------
    def on_ready(self, callback: EventHandler) -> EventHandler:
        return self.events.on("ready", callback)

    def on_update(self, callback: EventHandler) -> EventHandler:
        return self.events.on("update", callback)

    def on_error(self, callback: EventHandler) -> EventHandler:
        return self.events.on("error", callback)

    def on_strategy_report(self, callback: EventHandler) -> EventHandler:
        return self.events.on("strategyReport", callback)

    def on_event(self, callback: EventHandler) -> EventHandler:
        return self.events.on_event(callback)

    # -- дані ---------------------------------------------------------------
    @property
    def store(self) -> StudyPeriodsStore:
        return self._store

    @property
    def periods(self) -> List[Dict[str, Any]]:
        """Рядки індикатора, від найновішого до найстарішого."""

        return self._store.newest_first()

    @property
    def strategy_report(self) -> Optional[StrategyReport]:
        return self._strategy_report

    @property
    def graphics(self) -> Dict[str, List[Any]]:
        return {kind: list(items.values()) for kind, items in self._graphics.items() if items}

    # -- операції -----------------------------------------------------------
    def set_option(self, key: str, value: Any) -> None:
        if self.state is not StudyState.CREATED:
            raise RuntimeError(f"Study {self.study_id} вже прикріплено: опції змінюються до attach()")
        self.indicator.set_option(key, value)

    def attach(self, chart: Any, *, timeout: Optional[float] = None) -> concurrent.futures.Future:
        """Надсилає `create_study` і повертає future, що завершується на `study_completed`."""

        if self.state is not StudyState.CREATED:
            raise RuntimeError(f"Study {self.study_id} вже прикріплено")
        self.state = StudyState.ATTACHED
        self.chart = chart
        self.events.bind_delivery(getattr(chart._client, "deliver", None))
        return chart._submit_op(self.study_id, chart._attach_study, self, timeout)

    def set_indicator(self, indicator: Indicator) -> None:
        """Замінює дескриптор прикріпленого study (`modify_study`)."""

        if self.chart is None or self.state is StudyState.DELETED:
            self.indicator = indicator
            return
        self.chart._submit(self._modify, indicator)

    def delete(self) -> None:
        if self.chart is None:
            self.state = StudyState.DELETED
            return
        if self.state is StudyState.DELETED:
            return
        self.chart._client.dispatch(self._delete, True)

    # -- потік циклу --------------------------------------------------------
    def create_envelope(self, chart_session_id: str) -> Tuple[str, List[Any]]:
        return (
            "create_study",
            [
                chart_session_id,
                self.study_id,
                STUDY_TURNAROUND,
                PRICES_SERIES,
                self.indicator.type,
                self.indicator.build_inputs(),
            ],
        )

    def _modify(self, indicator: Indicator) -> None:
        self.indicator = indicator
        self.chart._send(
            "modify_study",
            [self.chart.session_id, self.study_id, STUDY_TURNAROUND, indicator.build_inputs()],
        )

    def _delete(self, notify_upstream: bool) -> None:
        if self.state is StudyState.DELETED:
            return
        self.state = StudyState.DELETED
        chart = self.chart
        if chart is None:
            return
        if notify_upstream:
            chart._client.send(
                "remove_study",
                [chart.session_id, self.study_id],
                session_id=chart.session_id,
                transient=True,
            )
        chart._forget_study(self.study_id)
        chart.pending.fail(self.study_id, Detached(f"Study {self.study_id} видалено"))

    def _mark_ready(self) -> None:
        if self.state is StudyState.ATTACHED:
            self.state = StudyState.READY
            self.events.emit("ready")

    def _on_loading(self, params: List[Any]) -> None:
        self.events.emit("loading")

    def _on_completed(self, params: List[Any]) -> None:
        self._mark_ready()
        self.chart.pending.resolve(self.study_id, self)

    def _on_error(self, params: List[Any]) -> None:
        message = params[3] if len(params) > 3 else "study_error"
        details = params[4] if len(params) > 4 else None
        error = StudyError(
            f"Помилка study {self.study_id}: {message}",
            session_id=self.chart.session_id,
            correlation_id=self.study_id,
            details=details,
        )
        # Study лишається прикріпленим: після reconnect його буде перестворено.
        self.chart.pending.fail(self.study_id, error)
        self.events.emit("error", error)

    def _on_critical(self, name: Any, description: Any) -> None:
        error = CriticalError(
            f"Критична помилка study {self.study_id}: {name} {description}",
            session_id=self.chart.session_id,
            correlation_id=self.study_id,
        )
        self.chart.pending.fail(self.study_id, error)
        self.events.emit("error", error)
        self._delete(False)

    def _on_data(self, payload: Mapping[str, Any]) -> None:
        if self.state is StudyState.DELETED:
            return
        changes: List[str] = []
        rows = payload.get("st")
        if isinstance(rows, list) and rows:
            result = self._store.merge_values(rows, self.indicator.plot_names())
            if result.changed:
                changes.append("plots")

        ns = payload.get("ns")
        raw = ns.get("d") if isinstance(ns, Mapping) else None
        if isinstance(raw, str) and raw:
            changes.extend(self._apply_ns(raw))

        if not changes:
            return
        self._mark_ready()
        self.events.emit("update", changes)
        if "report" in changes:
            self.events.emit("strategyReport", self._strategy_report)

    def _apply_ns(self, raw: str) -> List[str]:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            log.warning("[%s] Некоректний ns.d: %s", self.study_id, exc)
            return []
        if not isinstance(parsed, Mapping):
            return []
        changes: List[str] = []
        commands = parsed.get("graphicsCmds")
        if isinstance(commands, Mapping):
            self._apply_graphics(commands)
            changes.append("graphics")

        data = parsed.get("data")
        if isinstance(data, Mapping):
            report = data.get("report")
            if isinstance(report, Mapping):
                self._strategy_report = StrategyReport(**report)
                changes.append("report")
            packed = parsed.get("dataCompressed") or data.get("dataCompressed")
        else:
            packed = parsed.get("dataCompressed")
        if is_compressed_payload(packed):
            try:
                unpacked = decompress_payload(packed)
            except ProtocolError as exc:
                log.warning("[%s] Не вдалося розпакувати звіт стратегії: %s", self.study_id, exc)
                return changes
            report = unpacked.get("report") if isinstance(unpacked, Mapping) else None
            if isinstance(report, Mapping):
                self._strategy_report = StrategyReport(**report)
                if "report" not in changes:
                    changes.append("report")
        return changes

    def _apply_graphics(self, commands: Mapping[str, Any]) -> None:
        for erase in commands.get("erase") or ():
            if not isinstance(erase, Mapping):
                continue
            kind = erase.get("type")
            if erase.get("action") == "all":
                if kind:
                    self._graphics.pop(kind, None)
                else:
                    self._graphics.clear()
            elif erase.get("action") == "one" and kind:
                self._graphics.get(kind, {}).pop(erase.get("id"), None)

        created = commands.get("create")
        if not isinstance(created, Mapping):
            return
        for kind, groups in created.items():
            bucket = self._graphics.setdefault(kind, {})
            for group in groups or ():
                items = group.get("data") if isinstance(group, Mapping) else None
                for item in items or ():
                    if isinstance(item, Mapping) and "id" in item:
                        bucket[item["id"]] = dict(item)

