"""JSON views for starting, following and inspecting generation runs.

All views require an authenticated user and only expose projects owned by
that user. Starting a run returns immediately with its id; progress can be
polled or followed as a server-sent event stream.
"""

from __future__ import annotations

import json
import logging
import queue
from typing import Any, Dict, Iterator

from django.contrib.auth.decorators import login_required
from django.http import HttpRequest, HttpResponse, JsonResponse, StreamingHttpResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_POST

from .forms import CandidateQueryForm, GenerationRequestForm
from .models import GenerationRun, Project
from .orchestrator import get_orchestrator
from .progress import ProgressChannel
from .services import MissingImportError, query_candidates, run_snapshot, serialize_candidate, serialize_run

logger = logging.getLogger(__name__)

STREAM_KEEPALIVE_SECONDS = 15


def _user_run(request: HttpRequest, run_id) -> GenerationRun:
    return get_object_or_404(GenerationRun, run_id=run_id, project__owner=request.user)


@login_required
@require_POST
def start_generation(request: HttpRequest) -> HttpResponse:
    """Validate a generation request and queue a run for it."""

    try:
        payload = json.loads(request.body or b'{}')
    except ValueError:
        return JsonResponse({'errors': {'__all__': ['Request body must be valid JSON.']}}, status=400)
    if not isinstance(payload, dict):
        return JsonResponse({'errors': {'__all__': ['Request body must be a JSON object.']}}, status=400)

    form = GenerationRequestForm(data=payload, user=request.user)
    if not form.is_valid():
        if form.project_missing:
            return JsonResponse({'detail': 'Project not found.'}, status=404)
        return JsonResponse({'errors': form.errors.get_json_data()}, status=400)

    project = form.cleaned_data['projectId']
    try:
        run = get_orchestrator().start(project, form.cleaned_data['scenarios'], form.cleaned_data['rules'])
    except MissingImportError as exc:
        return JsonResponse({'detail': str(exc)}, status=409)
    return JsonResponse({'runId': str(run.run_id)}, status=202)


@login_required
@require_GET
def generation_progress(request: HttpRequest, run_id) -> HttpResponse:
    """Polling fallback returning the latest progress snapshot."""

    run = _user_run(request, run_id)
    return JsonResponse(run_snapshot(run, get_orchestrator().channel))


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _event_stream(run: GenerationRun, channel: ProgressChannel, keepalive: float) -> Iterator[str]:
    run_id = str(run.run_id)
    subscriber = channel.subscribe(run_id)
    try:
        yield _sse({'type': 'connected', 'runId': run_id})
        if channel.latest(run_id) is None:
            snapshot = run_snapshot(run)
            yield _sse({'type': 'progress', **{key: snapshot[key] for key in ('phase', 'percent', 'generated', 'rejected')}})
            if run.is_terminal and channel.completion(run_id) is None:
                yield _sse(_completed_event(snapshot))
                return
        while True:
            try:
                event = subscriber.get(timeout=keepalive)
            except queue.Empty:
                run.refresh_from_db()
                if run.is_terminal and channel.completion(run_id) is None:
                    yield _sse(_completed_event(run_snapshot(run)))
                    return
                yield ': keep-alive\n\n'
                continue
            yield _sse(event)
            if event.get('type') == 'completed':
                return
    finally:
        channel.unsubscribe(run_id, subscriber)


def _completed_event(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    event: Dict[str, Any] = {'type': 'completed', 'success': snapshot.get('success', False)}
    if snapshot.get('message'):
        event['message'] = snapshot['message']
    return event


@login_required
@require_GET
def generation_stream(request: HttpRequest, run_id) -> HttpResponse:
    """Stream progress events for a run as ``text/event-stream``."""

    run = _user_run(request, run_id)
    response = StreamingHttpResponse(
        _event_stream(run, get_orchestrator().channel, STREAM_KEEPALIVE_SECONDS),
        content_type='text/event-stream',
    )
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response


@login_required
@require_GET
def generation_candidates(request: HttpRequest, run_id) -> HttpResponse:
    """Paginated candidates of a run, optionally filtered."""

    run = _user_run(request, run_id)
    form = CandidateQueryForm(request.GET)
    if not form.is_valid():
        return JsonResponse({'errors': form.errors.get_json_data()}, status=400)

    page = query_candidates(
        run,
        scenario=form.cleaned_data.get('scenario') or '',
        status=form.cleaned_data['status'],
        page=form.cleaned_data['page'],
        page_size=form.cleaned_data['page_size'],
    )
    return JsonResponse(
        {
            'runId': str(run.run_id),
            'count': page.paginator.count,
            'page': page.number,
            'pages': page.paginator.num_pages,
            'results': [serialize_candidate(candidate) for candidate in page.object_list],
        }
    )


@login_required
@require_POST
def cancel_generation(request: HttpRequest, run_id) -> HttpResponse:
    run = _user_run(request, run_id)
    canceled = get_orchestrator().cancel(run)
    return JsonResponse({'runId': str(run.run_id), 'canceled': canceled})


@login_required
@require_GET
def project_runs(request: HttpRequest, project_id: int) -> HttpResponse:
    """List a project's runs, newest first."""

    project = get_object_or_404(Project, pk=project_id, owner=request.user)
    runs = project.runs.order_by('-started_at', '-id')
    return JsonResponse({'projectId': project.pk, 'runs': [serialize_run(run) for run in runs]})
