"""Plain-text and HTML bodies for anomaly alerts and weekly reports."""

from __future__ import annotations

import html
from typing import TYPE_CHECKING

from domain.models.billing import Anomaly
from domain.services.anomaly_engine import dimension_label, format_money, format_pct

if TYPE_CHECKING:
    from application.services.report_service import WeeklyReport

BRAND = "Cost Sentinel"


def anomalies_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/app/anomalies"


def _signed_pct(pct_change: float) -> str:
    text = format_pct(pct_change)
    return text if text == "∞" else f"+{text}"


def render_anomaly_email(anomaly: Anomaly, currency: str, base_url: str) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for one anomaly alert."""
    label = dimension_label(anomaly.dimension)
    severity = anomaly.severity.value.upper()
    day = anomaly.day.isoformat()
    observed = format_money(anomaly.observed, currency)
    baseline = format_money(anomaly.baseline, currency)
    jump = _signed_pct(anomaly.pct_change)
    link = anomalies_url(base_url)

    subject = f"[{severity}] {label} spike on {day} ({jump})"
    text = "\n".join(
        [
            f"Cost anomaly ({severity})",
            f"Date: {day}",
            f"Service: {label}",
            f"Observed: {observed}",
            f"Baseline (7-day avg): {baseline}",
            f"Jump: {jump}",
            "",
            anomaly.message,
            "",
            f"Review it: {link}",
        ]
    )

    e = html.escape
    rows = "".join(
        f"<tr><td style=\"padding:4px 12px 4px 0;color:#666\">{e(k)}</td><td>{e(v)}</td></tr>"
        for k, v in (
            ("Date", day),
            ("Service", label),
            ("Observed", observed),
            ("Baseline (7-day avg)", baseline),
            ("Jump", jump),
        )
    )
    body = (
        f"<div style=\"font-family:system-ui,sans-serif;max-width:560px\">"
        f"<h2 style=\"margin:0 0 12px\">{e(BRAND)}: cost anomaly ({e(severity)})</h2>"
        f"<table>{rows}</table>"
        f"<p>{e(anomaly.message)}</p>"
        f"<p><a href=\"{e(link)}\">Open anomalies</a></p>"
        f"</div>"
    )
    return subject, text, body


def render_anomaly_instant_message(anomaly: Anomaly, currency: str, base_url: str) -> str:
    return "\n".join(
        [
            f"⚡ Cost anomaly ({anomaly.severity.value.upper()})",
            f"Date: {anomaly.day.isoformat()}",
            f"Service: {dimension_label(anomaly.dimension)}",
            f"Observed: {format_money(anomaly.observed, currency)}",
            f"Baseline: {format_money(anomaly.baseline, currency)}",
            f"Jump: {_signed_pct(anomaly.pct_change)}",
            "",
            anomaly.message,
            "",
            f"Open: {anomalies_url(base_url)}",
        ]
    )


def render_weekly_report_email(report: WeeklyReport, base_url: str) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for the weekly spend report."""
    cur = report.currency
    start = report.start.isoformat()
    end = report.end.isoformat()
    delta_pct = "n/a" if report.delta_pct is None else f"{report.delta_pct * 100:+.1f}%"
    delta = format_money(report.delta, cur)
    if report.delta > 0:
        delta = f"+{delta}"

    subject = f"Weekly spend report {start} to {end}: {format_money(report.last7, cur)}"

    lines = [
        f"{BRAND} weekly report ({start} to {end})",
        "",
        f"Last 7 days: {format_money(report.last7, cur)}",
        f"Previous 7 days: {format_money(report.prev7, cur)}",
        f"Change: {delta} ({delta_pct})",
        "",
        "Daily total:",
        *(f"  {d.isoformat()}  {format_money(a, cur)}" for d, a in report.daily),
    ]
    if report.top_dimensions:
        lines += ["", "Top services:"]
        lines += [f"  {name}: {format_money(a, cur)}" for name, a in report.top_dimensions]
    if report.anomalies:
        lines += ["", "Notable anomalies:"]
        lines += [
            f"  {a.day.isoformat()} [{a.severity.value}] {a.message}" for a in report.anomalies
        ]
    lines += ["", f"Details: {anomalies_url(base_url)}"]
    text = "\n".join(lines)

    e = html.escape
    daily_rows = "".join(
        f"<tr><td>{e(d.isoformat())}</td><td style=\"text-align:right\">{e(format_money(a, cur))}</td></tr>"
        for d, a in report.daily
    )
    top_rows = "".join(
        f"<li>{e(name)}: {e(format_money(a, cur))}</li>" for name, a in report.top_dimensions
    )
    anomaly_rows = "".join(
        f"<li>{e(a.day.isoformat())} <b>{e(a.severity.value)}</b> {e(a.message)}</li>"
        for a in report.anomalies
    )
    body = (
        f"<div style=\"font-family:system-ui,sans-serif;max-width:560px\">"
        f"<h2>{e(BRAND)} weekly report</h2>"
        f"<p>{e(start)} to {e(end)}</p>"
        f"<p><b>{e(format_money(report.last7, cur))}</b> vs {e(format_money(report.prev7, cur))} "
        f"previous week ({e(delta)}, {e(delta_pct)})</p>"
        f"<table>{daily_rows}</table>"
        + (f"<h3>Top services</h3><ul>{top_rows}</ul>" if top_rows else "")
        + (f"<h3>Notable anomalies</h3><ul>{anomaly_rows}</ul>" if anomaly_rows else "")
        + f"<p><a href=\"{e(anomalies_url(base_url))}\">Open dashboard</a></p></div>"
    )
    return subject, text, body
