"""Data models handed to rendering collaborators.

A series model holds a time-ordered list of points plus a display options
record.  Renderers call :meth:`SeriesModel.attach` with a redraw callback and
are notified after every mutation.  ``autoscale_info`` always returns
``None`` so these overlays never influence the host chart's price axis.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, TypeVar

from .signals import CumulativeDeltaPoint, DeltaPoint
from .types import FootprintData

log = logging.getLogger(__name__)

P = TypeVar("P")
O = TypeVar("O")


class SeriesModel(Generic[P, O]):
    """Common ``set_data`` / ``apply_options`` contract."""

    options_cls: type

    def __init__(self, options: O | None = None, **overrides: Any) -> None:
        base = options if options is not None else self.options_cls()
        self._options: O = dataclasses.replace(base, **overrides) if overrides else base
        self._data: list[P] = []
        self._request_update: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Renderer wiring
    def attach(self, request_update: Callable[[], None]) -> None:
        self._request_update = request_update

    def detach(self) -> None:
        self._request_update = None

    def update_all_views(self) -> None:
        if self._request_update is None:
            return
        try:
            self._request_update()
        except Exception as e:
            log.warning("%s redraw request failed: %s", type(self).__name__, e)

    # ------------------------------------------------------------------
    # Data
    def set_data(self, data: Iterable[P] | None) -> None:
        self._data = list(data or [])
        self.update_all_views()

    def data(self) -> list[P]:
        return list(self._data)

    def upsert(self, point: P) -> None:
        """Replace the point sharing ``point.time`` or append it."""
        time = getattr(point, "time")
        for i in range(len(self._data) - 1, -1, -1):
            if getattr(self._data[i], "time") == time:
                self._data[i] = point
                break
        else:
            self._data.append(point)
            self._trim()
        self.update_all_views()

    def _trim(self) -> None:
        pass

    def clear_data(self) -> None:
        self._data = []
        self.update_all_views()

    def __len__(self) -> int:
        return len(self._data)

    # ------------------------------------------------------------------
    # Options
    def options(self) -> O:
        return self._options

    def apply_options(self, **partial: Any) -> None:
        self._options = dataclasses.replace(self._options, **partial)
        self.update_all_views()

    def autoscale_info(self) -> None:
        return None


@dataclass(frozen=True)
class FootprintOptions:
    show_imbalances: bool = True
    imbalance_ratio: float = 3.0
    show_poc: bool = True
    show_value_area: bool = False
    value_area_percent: float = 70.0
    auto_tick_size: bool = True
    custom_tick_size: float | None = None
    max_bars_to_show: int = 50


class FootprintSeries(SeriesModel[FootprintData, FootprintOptions]):
    options_cls = FootprintOptions

    def add_footprint(self, footprint: FootprintData) -> None:
        self.upsert(footprint)

    def _trim(self) -> None:
        limit = self._options.max_bars_to_show
        if limit > 0 and len(self._data) > limit:
            del self._data[: len(self._data) - limit]


@dataclass(frozen=True)
class DeltaOptions:
    show_delta_bars: bool = True
    show_cumulative_delta: bool = True
    show_divergences: bool = True
    divergence_window: int = 5
    neutral_threshold: float = 0.1


class DeltaSeries(SeriesModel[DeltaPoint, DeltaOptions]):
    options_cls = DeltaOptions

    def add_delta(self, point: DeltaPoint) -> None:
        self.upsert(point)


class CumulativeDeltaSeries(SeriesModel[CumulativeDeltaPoint, DeltaOptions]):
    options_cls = DeltaOptions

    def add_cd_point(self, point: CumulativeDeltaPoint) -> None:
        self.upsert(point)

