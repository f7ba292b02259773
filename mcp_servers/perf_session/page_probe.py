"""Page Probe: in-page PerformanceObserver collector + its Runtime.evaluate client.

The probe is optional by contract: every call may find it absent (CSP, crashed
renderer, navigation in progress). Callers treat failures as degraded data.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import CommandError
from .inspector_link import InspectorLink

logger = logging.getLogger("perf.session.probe")

PROBE_SCRIPT_VERSION = "3"


# NOTE: self-contained and idempotent. Installs `globalThis.__perfProbe` with
# start() / stop() / snapshot(). Observers use `buffered: true` so entries that
# happened before start() (e.g. right after a cold reload) are still delivered.
PROBE_SCRIPT_SOURCE = r"""
(() => {
  const VERSION = "3";
  const g = globalThis;
  if (g.__perfProbe && g.__perfProbe.__version === VERSION) {
    return { ok: true, already: true, version: VERSION };
  }

  let active = false;
  let observers = [];
  let st = null;

  function reset() {
    st = {
      lcp: null, lcpElement: null,
      cls: 0, clsSources: [],
      firstInput: null, interactions: new Map(),
      fcp: null,
      longTaskCount: 0, longTaskTotal: 0, longTaskMax: 0,
    };
  }
  reset();

  function domainOf(u) {
    try { return new URL(u).hostname; } catch (e) { return null; }
  }

  function observe(type, cb, extra) {
    try {
      const obs = new PerformanceObserver((list) => cb(list.getEntries()));
      obs.observe(Object.assign({ type, buffered: true }, extra || {}));
      observers.push({ obs, cb });
    } catch (e) {
      // unsupported entry type
    }
  }

  function start() {
    if (active) return { ok: true, already: true };
    active = true;
    reset();
    observe("largest-contentful-paint", (entries) => {
      for (const e of entries) {
        st.lcp = e.startTime;
        st.lcpElement = {
          tag: e.element ? e.element.tagName : null,
          url: e.url || null,
          size: e.size || null,
          startTime: e.startTime,
        };
      }
    });
    observe("layout-shift", (entries) => {
      for (const e of entries) {
        if (e.hadRecentInput) continue;
        st.cls += e.value;
        st.clsSources.push({
          value: e.value,
          startTime: e.startTime,
          sources: (e.sources || []).map((s) => ({
            node: s.node ? s.node.nodeName : null,
            currentRect: s.currentRect
              ? { top: s.currentRect.top, left: s.currentRect.left,
                  width: s.currentRect.width, height: s.currentRect.height }
              : null,
          })),
        });
      }
    });
    observe("event", (entries) => {
      for (const e of entries) {
        if (!e.interactionId) continue;
        const prev = st.interactions.get(e.interactionId) || 0;
        st.interactions.set(e.interactionId, Math.max(prev, e.duration));
      }
    }, { durationThreshold: 16 });
    observe("first-input", (entries) => {
      for (const e of entries) {
        if (st.firstInput == null) st.firstInput = e.duration;
      }
    });
    observe("paint", (entries) => {
      for (const e of entries) {
        if (e.name === "first-contentful-paint" && st.fcp == null) st.fcp = e.startTime;
      }
    });
    observe("longtask", (entries) => {
      for (const e of entries) {
        st.longTaskCount += 1;
        st.longTaskTotal += e.duration;
        if (e.duration > st.longTaskMax) st.longTaskMax = e.duration;
      }
    });
    return { ok: true };
  }

  function stop() {
    active = false;
    for (const { obs, cb } of observers) {
      try {
        const rest = obs.takeRecords();
        if (rest && rest.length) cb(rest);
        obs.disconnect();
      } catch (e) {}
    }
    observers = [];
    return { ok: true };
  }

  function snapshot() {
    const durations = Array.from(st.interactions.values());
    const inp = durations.length ? Math.max(...durations) : st.firstInput;
    const nav = (performance.getEntriesByType("navigation") || [])[0] || null;
    const resources = performance.getEntriesByType("resource") || [];
    const pageHost = location.hostname;
    const byType = {};
    const rows = [];
    let thirdParty = 0;
    for (const r of resources) {
      const type = r.initiatorType || "other";
      if (!byType[type]) byType[type] = { type, requests: 0, bytes: 0 };
      const size = r.transferSize || r.encodedBodySize || 0;
      byType[type].requests += 1;
      byType[type].bytes += size;
      const domain = domainOf(r.name);
      if (domain && domain !== pageHost) thirdParty += 1;
      rows.push({ url: r.name, domain, type, durationMs: r.duration, transferBytes: size });
    }
    const slowest = rows.slice().sort((a, b) => b.durationMs - a.durationMs).slice(0, 10);
    const largest = rows.slice().sort((a, b) => b.transferBytes - a.transferBytes).slice(0, 10);
    return {
      url: location.href,
      userAgent: navigator.userAgent,
      lcp: st.lcp,
      lcpElement: st.lcpElement,
      cls: st.cls,
      clsSources: st.clsSources.slice().sort((a, b) => b.value - a.value).slice(0, 5),
      inp: inp == null ? null : inp,
      interactionDurations: durations.sort((a, b) => b - a).slice(0, 10),
      fcp: st.fcp,
      ttfb: nav ? nav.responseStart - nav.startTime : null,
      dcl: nav && nav.domContentLoadedEventEnd > 0 ? nav.domContentLoadedEventEnd - nav.startTime : null,
      load: nav && nav.loadEventEnd > 0 ? nav.loadEventEnd - nav.startTime : null,
      longTaskCount: st.longTaskCount,
      longTaskTotal: st.longTaskTotal,
      longTaskMax: st.longTaskMax,
      resources: { byType: Object.values(byType), slowest, largest, thirdParty },
    };
  }

  g.__perfProbe = { __version: VERSION, start, stop, snapshot, isActive: () => active };
  return { ok: true, version: VERSION };
})()
"""

# Registered for new documents (cold reload): install and start measuring immediately.
PROBE_BOOTSTRAP_SOURCE = PROBE_SCRIPT_SOURCE.rstrip() + ";\nglobalThis.__perfProbe && globalThis.__perfProbe.start();\n"

_CHECK_EXPR = (
    "(globalThis.__perfProbe && "
    f"globalThis.__perfProbe.__version === {json.dumps(PROBE_SCRIPT_VERSION)} && "
    "typeof globalThis.__perfProbe.snapshot === 'function') === true"
)


def _num(v: Any) -> float | None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def _dict_list(v: Any) -> tuple[dict[str, Any], ...]:
    if not isinstance(v, list):
        return ()
    return tuple(dict(x) for x in v if isinstance(x, dict))


@dataclass(frozen=True, slots=True)
class PageMetrics:
    """Normalized probe snapshot. Missing or malformed values become None / empty."""

    url: str | None = None
    user_agent: str | None = None
    lcp: float | None = None
    lcp_element: dict[str, Any] | None = None
    cls: float | None = None
    cls_sources: tuple[dict[str, Any], ...] = ()
    inp: float | None = None
    interaction_durations: tuple[float, ...] = ()
    fcp: float | None = None
    ttfb: float | None = None
    dom_content_loaded: float | None = None
    load: float | None = None
    long_task_count: int = 0
    long_task_total: float = 0.0
    long_task_max: float = 0.0
    resources: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> PageMetrics | None:
        if not isinstance(raw, dict):
            return None
        resources = raw.get("resources") if isinstance(raw.get("resources"), dict) else {}
        durations = raw.get("interactionDurations")
        lcp_el = raw.get("lcpElement")
        return cls(
            url=raw.get("url") if isinstance(raw.get("url"), str) else None,
            user_agent=raw.get("userAgent") if isinstance(raw.get("userAgent"), str) else None,
            lcp=_num(raw.get("lcp")),
            lcp_element=dict(lcp_el) if isinstance(lcp_el, dict) else None,
            cls=_num(raw.get("cls")),
            cls_sources=_dict_list(raw.get("clsSources")),
            inp=_num(raw.get("inp")),
            interaction_durations=tuple(
                d for d in (_num(x) for x in (durations if isinstance(durations, list) else [])) if d is not None
            ),
            fcp=_num(raw.get("fcp")),
            ttfb=_num(raw.get("ttfb")),
            dom_content_loaded=_num(raw.get("dcl")),
            load=_num(raw.get("load")),
            long_task_count=int(_num(raw.get("longTaskCount")) or 0),
            long_task_total=_num(raw.get("longTaskTotal")) or 0.0,
            long_task_max=_num(raw.get("longTaskMax")) or 0.0,
            resources={
                "byType": list(_dict_list(resources.get("byType"))),
                "slowest": list(_dict_list(resources.get("slowest"))),
                "largest": list(_dict_list(resources.get("largest"))),
                "thirdPartyCount": int(_num(resources.get("thirdParty")) or 0),
            },
        )


class PageProbe:
    """Runtime.evaluate client for the in-page probe, addressed by target id."""

    def __init__(self, link: InspectorLink) -> None:
        self.link = link
        self._bootstrap_ids: dict[str, str] = {}

    async def _eval(self, target_id: str, expression: str) -> Any:
        res = await self.link.send_command(
            target_id,
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": False},
        )
        if isinstance(res.get("exceptionDetails"), dict):
            details = res["exceptionDetails"]
            raise CommandError(
                reason=f"probe evaluation threw: {details.get('text') or 'exception'}",
                details={"targetId": target_id},
            )
        result = res.get("result")
        return result.get("value") if isinstance(result, dict) else None

    async def is_present(self, target_id: str) -> bool:
        try:
            return await self._eval(target_id, _CHECK_EXPR) is True
        except CommandError:
            return False

    async def ensure(self, target_id: str) -> bool:
        """Install the probe if missing. Raises CommandError when it cannot be installed."""
        if target_id not in self._bootstrap_ids:
            try:
                res = await self.link.send_command(
                    target_id, "Page.addScriptToEvaluateOnNewDocument", {"source": PROBE_BOOTSTRAP_SOURCE}
                )
                identifier = res.get("identifier")
                if isinstance(identifier, str) and identifier:
                    self._bootstrap_ids[target_id] = identifier
            except CommandError as exc:
                # Survives only the current document; still usable.
                logger.debug("probe_bootstrap_unavailable target=%s err=%s", target_id, exc)

        if await self.is_present(target_id):
            return True
        await self._eval(target_id, PROBE_SCRIPT_SOURCE)
        if not await self.is_present(target_id):
            raise CommandError(reason="probe not available after injection", details={"targetId": target_id})
        return True

    async def start(self, target_id: str) -> None:
        await self._eval(target_id, "globalThis.__perfProbe.start()")

    async def stop(self, target_id: str) -> None:
        await self._eval(target_id, "globalThis.__perfProbe && globalThis.__perfProbe.stop()")

    async def snapshot(self, target_id: str) -> PageMetrics | None:
        raw = await self._eval(
            target_id, "globalThis.__perfProbe ? globalThis.__perfProbe.snapshot() : null"
        )
        return PageMetrics.from_raw(raw)

    def forget(self, target_id: str) -> None:
        self._bootstrap_ids.pop(target_id, None)


__all__ = ["PROBE_BOOTSTRAP_SOURCE", "PROBE_SCRIPT_SOURCE", "PROBE_SCRIPT_VERSION", "PageMetrics", "PageProbe"]
