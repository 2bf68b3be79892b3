"""Sliding-window throttle for starting generation runs."""

from __future__ import annotations

import json
import time
from typing import Any, Callable

from django.conf import settings
from django.core.cache import caches
from django.http import HttpRequest, HttpResponse, JsonResponse

DEFAULT_THROTTLE_LIMIT = 5  # runs
DEFAULT_THROTTLE_WINDOW = 60  # seconds
DEFAULT_THROTTLE_KEY_PREFIX = 'linkplanner:throttle'


class SlidingWindowRateThrottle:
    """Limit throttled routes per user and project using the cache backend."""

    def __init__(
        self,
        get_response: Callable[[HttpRequest], HttpResponse],
        *,
        limit: int | None = None,
        window: int | None = None,
        cache_alias: str = 'default',
        key_prefix: str | None = None,
    ) -> None:
        self.get_response = get_response
        self.limit = limit or getattr(settings, 'LINKPLANNER_START_LIMIT', DEFAULT_THROTTLE_LIMIT)
        self.window = window or getattr(settings, 'LINKPLANNER_START_WINDOW', DEFAULT_THROTTLE_WINDOW)
        self.cache = caches[cache_alias]
        self.key_prefix = key_prefix or getattr(settings, 'THROTTLE_KEY_PREFIX', DEFAULT_THROTTLE_KEY_PREFIX)

    def __call__(self, request: HttpRequest) -> HttpResponse:
        return self.get_response(request)

    def process_view(
        self,
        request: HttpRequest,
        view_func: Callable[..., Any],
        view_args: tuple,
        view_kwargs: dict,
    ) -> HttpResponse | None:
        if request.method != 'POST':
            return None

        resolved = request.resolver_match
        if resolved is None:
            return None
        route_name = f"{resolved.namespace}:{resolved.url_name}" if resolved.namespace else resolved.url_name
        if route_name not in getattr(settings, 'THROTTLED_ROUTES', []):
            return None
        if not request.user.is_authenticated:
            return None

        cache_key = self._build_cache_key(request, route_name)
        now = time.time()
        bucket = self.cache.get(cache_key, [])
        bucket = [timestamp for timestamp in bucket if timestamp > now - self.window]

        if len(bucket) >= self.limit:
            return self._reject(request)

        bucket.append(now)
        self.cache.set(cache_key, bucket, timeout=self.window)
        return None

    def _build_cache_key(self, request: HttpRequest, route_name: str) -> str:
        return f"{self.key_prefix}:{route_name}:{request.user.pk}:{self._project_id(request)}"

    def _project_id(self, request: HttpRequest) -> str:
        try:
            payload = json.loads(request.body or b'{}')
        except ValueError:
            return '-'
        if isinstance(payload, dict):
            return str(payload.get('projectId', '-'))
        return '-'

    def _reject(self, request: HttpRequest) -> HttpResponse:
        payload = {
            'detail': 'Too many generation runs started. Try again shortly.',
            'route': getattr(request.resolver_match, 'view_name', 'unknown'),
        }
        return JsonResponse(payload, status=429)


def sliding_window_rate_throttle(get_response: Callable[[HttpRequest], HttpResponse]) -> SlidingWindowRateThrottle:
    return SlidingWindowRateThrottle(get_response)
