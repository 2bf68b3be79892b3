"""Database models for the linkplanner app.

A project owns a series of imports; the latest completed import provides the
pages and text blocks a generation run works on. Runs record their progress
and the link candidates they proposed, accepted or rejected. Embedding
vectors are cached per project by the hash of their normalised text.
"""

from __future__ import annotations

import uuid

from django.conf import settings
from django.db import models


class Project(models.Model):
    """A website whose pages are planned for internal linking."""

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='linkplanner_projects',
    )
    name = models.CharField(max_length=200)
    domain = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']

    def __str__(self) -> str:  # pragma: no cover - convenience display
        return self.name


class ImportJob(models.Model):
    """One ingestion of a project's pages."""

    STATUS_PENDING = 'pending'
    STATUS_RUNNING = 'running'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_RUNNING, 'Running'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_FAILED, 'Failed'),
    ]

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='imports')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self) -> str:  # pragma: no cover - convenience display
        return f"{self.project} · {self.status}"


class Page(models.Model):
    """An imported page with its link-graph metrics."""

    job = models.ForeignKey(ImportJob, on_delete=models.CASCADE, related_name='pages')
    url = models.URLField(max_length=1000)
    title = models.CharField(max_length=500, blank=True)
    description = models.TextField(blank=True)
    language = models.CharField(max_length=16, blank=True)
    click_depth = models.PositiveIntegerField(default=0)
    in_degree = models.PositiveIntegerField(default=0)
    out_degree = models.PositiveIntegerField(default=0)
    word_count = models.PositiveIntegerField(default=0)
    published_at = models.DateTimeField(null=True, blank=True)
    is_hub = models.BooleanField(default=False)

    class Meta:
        unique_together = ('job', 'url')
        ordering = ['url']

    @property
    def is_orphan(self) -> bool:
        return self.in_degree == 0

    def __str__(self) -> str:  # pragma: no cover - convenience display
        return self.url


class Block(models.Model):
    """A segmented piece of page text."""

    TYPE_HEADING = 'heading'
    TYPE_PARAGRAPH = 'paragraph'
    TYPE_LIST = 'list'
    TYPE_CHOICES = [
        (TYPE_HEADING, 'Heading'),
        (TYPE_PARAGRAPH, 'Paragraph group'),
        (TYPE_LIST, 'List'),
    ]

    page = models.ForeignKey(Page, on_delete=models.CASCADE, related_name='blocks')
    block_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=TYPE_PARAGRAPH)
    text = models.TextField()
    position = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['page', 'position']


class EmbeddingCacheEntry(models.Model):
    """Persistent vector cache keyed by project and normalised text hash."""

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='embedding_cache')
    text_hash = models.CharField(max_length=64)
    vector = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)
    last_used = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        unique_together = ('project', 'text_hash')


class Embedding(models.Model):
    """Vector assigned to a block for a project."""

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='embeddings')
    block = models.ForeignKey(Block, on_delete=models.CASCADE, related_name='embeddings')
    text_hash = models.CharField(max_length=64)
    vector = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ('project', 'block')


class GenerationRun(models.Model):
    """One execution of the candidate generation pipeline."""

    STATUS_PENDING = 'pending'
    STATUS_RUNNING = 'running'
    STATUS_PUBLISHED = 'published'
    STATUS_FAILED = 'failed'
    STATUS_CANCELED = 'canceled'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_RUNNING, 'Running'),
        (STATUS_PUBLISHED, 'Published'),
        (STATUS_FAILED, 'Failed'),
        (STATUS_CANCELED, 'Canceled'),
    ]
    TERMINAL_STATUSES = (STATUS_PUBLISHED, STATUS_FAILED, STATUS_CANCELED)

    run_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='runs')
    import_job = models.ForeignKey(
        ImportJob,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='runs',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    phase = models.CharField(max_length=64, blank=True)
    percent = models.PositiveSmallIntegerField(default=0)
    generated = models.PositiveIntegerField(default=0)
    rejected = models.PositiveIntegerField(default=0)
    scenarios = models.JSONField(default=dict, blank=True)
    rules = models.JSONField(default=dict, blank=True)
    worker_id = models.CharField(max_length=64, blank=True)
    cancel_requested = models.BooleanField(default=False)
    started_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True)

    class Meta:
        ordering = ['-started_at']

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def __str__(self) -> str:  # pragma: no cover - convenience display
        return f"{self.project} · {self.run_id} · {self.status}"


class LinkCandidate(models.Model):
    """A proposed link, accepted or rejected with a reason code."""

    run = models.ForeignKey(GenerationRun, on_delete=models.CASCADE, related_name='candidates')
    source_page = models.ForeignKey(Page, on_delete=models.CASCADE, related_name='outgoing_candidates')
    target_page = models.ForeignKey(Page, on_delete=models.CASCADE, related_name='incoming_candidates')
    source_url = models.URLField(max_length=1000)
    target_url = models.URLField(max_length=1000)
    anchor_text = models.CharField(max_length=255, blank=True)
    scenario = models.CharField(max_length=16, db_index=True)
    similarity = models.FloatField(default=0.0)
    position = models.PositiveIntegerField(default=0)
    is_rejected = models.BooleanField(default=False)
    rejection_reason = models.CharField(max_length=32, blank=True)
    is_draft = models.BooleanField(default=False)
    css_class = models.CharField(max_length=100, blank=True)
    rel_attribute = models.CharField(max_length=100, blank=True)
    target_attribute = models.CharField(max_length=20, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        constraints = [
            models.CheckConstraint(
                condition=models.Q(is_rejected=True) | ~models.Q(source_page=models.F('target_page')),
                name='linkplanner_accepted_not_self_link',
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover - convenience display
        return f"{self.source_url} -> {self.target_url}"


class BrokenUrl(models.Model):
    """A target URL found unreachable while checking a run's links."""

    run = models.ForeignKey(GenerationRun, on_delete=models.CASCADE, related_name='broken_urls')
    url = models.URLField(max_length=1000)
    status_code = models.PositiveSmallIntegerField(null=True, blank=True)
    checked_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ('run', 'url')
