"""Sending statistics to a webhook and a Prometheus push gateway."""

from __future__ import annotations

import base64
import logging
from urllib.parse import quote

import requests

from .stats import GaugeVec, PrometheusProvider, WebhookProvider

SUBSYSTEM = "restic_backup"
_EXPOSITION_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class StatsError(RuntimeError):
    """Raised when statistics cannot be delivered."""


def _path_segment(name: str, value: str) -> str:
    if not value:
        return f"{name}@base64/="
    if "/" in value:
        encoded = base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii")
        return f"{name}@base64/{encoded}"
    return f"{name}/{quote(value, safe='')}"


class StatsHandler:
    """Delivers backup and restore statistics to their configured targets."""

    def __init__(
        self,
        prom_url: str,
        prom_hostname: str,
        webhook_url: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self.prom_url = prom_url
        self.prom_hostname = prom_hostname
        self.webhook_url = webhook_url
        self._log = (logger or logging.getLogger(__name__)).getChild("statsHandler")

    def send_prometheus(self, provider: PrometheusProvider) -> None:
        """Push every collector of ``provider`` to the push gateway, if configured."""
        if not self.prom_url:
            return
        self._log.getChild("promStats").info("sending prometheus stats: url=%s", self.prom_url)
        for collector in provider.to_prom():
            self._update_prometheus(collector)

    def _push_url(self) -> str:
        base = self.prom_url if "://" in self.prom_url else f"http://{self.prom_url}"
        base = base.removesuffix("/")
        return "/".join(
            (
                base,
                "metrics",
                _path_segment("job", SUBSYSTEM),
                _path_segment("instance", self.prom_hostname),
            )
        )

    def _update_prometheus(self, collector: GaugeVec) -> None:
        url = self._push_url()
        try:
            response = requests.post(
                url,
                data=collector.expose().encode("utf-8"),
                headers={"Content-Type": _EXPOSITION_CONTENT_TYPE},
            )
        except requests.RequestException as exc:
            raise StatsError(f"could not push to prometheus: {exc}") from exc
        if response.status_code not in (200, 202):
            raise StatsError(
                f"unexpected status code {response.status_code} while pushing to {url}"
            )

    def send_webhook(self, provider: WebhookProvider) -> None:
        """Post the JSON of ``provider`` to the webhook, if configured."""
        if not self.webhook_url:
            return
        self._log.getChild("webhookStats").info("sending webhooks: url=%s", self.webhook_url)

        data = provider.to_json()
        if not data:
            raise StatsError("webhook data is empty")

        try:
            response = requests.post(
                self.webhook_url, data=data, headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as exc:
            raise StatsError(
                f"could not send webhook: {exc} http status code: http status unavailable"
            ) from exc
        if response.status_code != 200:
            status = f"{response.status_code} {response.reason or ''}".rstrip()
            raise StatsError(f"could not send webhook: <nil> http status code: {status}")