import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Project',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=200)),
                ('domain', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                (
                    'owner',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='linkplanner_projects',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={'ordering': ['name']},
        ),
        migrations.CreateModel(
            name='ImportJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                (
                    'status',
                    models.CharField(
                        choices=[
                            ('pending', 'Pending'),
                            ('running', 'Running'),
                            ('completed', 'Completed'),
                            ('failed', 'Failed'),
                        ],
                        default='pending',
                        max_length=20,
                    ),
                ),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='imports',
                        to='linkplanner.project',
                    ),
                ),
            ],
            options={'ordering': ['-created_at']},
        ),
        migrations.CreateModel(
            name='Page',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('url', models.URLField(max_length=1000)),
                ('title', models.CharField(blank=True, max_length=500)),
                ('description', models.TextField(blank=True)),
                ('language', models.CharField(blank=True, max_length=16)),
                ('click_depth', models.PositiveIntegerField(default=0)),
                ('in_degree', models.PositiveIntegerField(default=0)),
                ('out_degree', models.PositiveIntegerField(default=0)),
                ('word_count', models.PositiveIntegerField(default=0)),
                ('published_at', models.DateTimeField(blank=True, null=True)),
                ('is_hub', models.BooleanField(default=False)),
                (
                    'job',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='pages',
                        to='linkplanner.importjob',
                    ),
                ),
            ],
            options={'ordering': ['url'], 'unique_together': {('job', 'url')}},
        ),
        migrations.CreateModel(
            name='Block',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                (
                    'block_type',
                    models.CharField(
                        choices=[('heading', 'Heading'), ('paragraph', 'Paragraph group'), ('list', 'List')],
                        default='paragraph',
                        max_length=20,
                    ),
                ),
                ('text', models.TextField()),
                ('position', models.PositiveIntegerField(default=0)),
                (
                    'page',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='blocks',
                        to='linkplanner.page',
                    ),
                ),
            ],
            options={'ordering': ['page', 'position']},
        ),
        migrations.CreateModel(
            name='EmbeddingCacheEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('text_hash', models.CharField(max_length=64)),
                ('vector', models.JSONField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('last_used', models.DateTimeField(auto_now_add=True, db_index=True)),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='embedding_cache',
                        to='linkplanner.project',
                    ),
                ),
            ],
            options={'unique_together': {('project', 'text_hash')}},
        ),
        migrations.CreateModel(
            name='Embedding',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('text_hash', models.CharField(max_length=64)),
                ('vector', models.JSONField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                (
                    'block',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='embeddings',
                        to='linkplanner.block',
                    ),
                ),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='embeddings',
                        to='linkplanner.project',
                    ),
                ),
            ],
            options={'unique_together': {('project', 'block')}},
        ),
        migrations.CreateModel(
            name='GenerationRun',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('run_id', models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                (
                    'status',
                    models.CharField(
                        choices=[
                            ('pending', 'Pending'),
                            ('running', 'Running'),
                            ('published', 'Published'),
                            ('failed', 'Failed'),
                            ('canceled', 'Canceled'),
                        ],
                        default='pending',
                        max_length=20,
                    ),
                ),
                ('phase', models.CharField(blank=True, max_length=64)),
                ('percent', models.PositiveSmallIntegerField(default=0)),
                ('generated', models.PositiveIntegerField(default=0)),
                ('rejected', models.PositiveIntegerField(default=0)),
                ('scenarios', models.JSONField(blank=True, default=dict)),
                ('rules', models.JSONField(blank=True, default=dict)),
                ('worker_id', models.CharField(blank=True, max_length=64)),
                ('cancel_requested', models.BooleanField(default=False)),
                ('started_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('error_message', models.TextField(blank=True)),
                (
                    'import_job',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='runs',
                        to='linkplanner.importjob',
                    ),
                ),
                (
                    'project',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='runs',
                        to='linkplanner.project',
                    ),
                ),
            ],
            options={'ordering': ['-started_at']},
        ),
        migrations.CreateModel(
            name='LinkCandidate',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('source_url', models.URLField(max_length=1000)),
                ('target_url', models.URLField(max_length=1000)),
                ('anchor_text', models.CharField(blank=True, max_length=255)),
                ('scenario', models.CharField(db_index=True, max_length=16)),
                ('similarity', models.FloatField(default=0.0)),
                ('position', models.PositiveIntegerField(default=0)),
                ('is_rejected', models.BooleanField(default=False)),
                ('rejection_reason', models.CharField(blank=True, max_length=32)),
                ('is_draft', models.BooleanField(default=False)),
                ('css_class', models.CharField(blank=True, max_length=100)),
                ('rel_attribute', models.CharField(blank=True, max_length=100)),
                ('target_attribute', models.CharField(blank=True, max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                (
                    'run',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='candidates',
                        to='linkplanner.generationrun',
                    ),
                ),
                (
                    'source_page',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='outgoing_candidates',
                        to='linkplanner.page',
                    ),
                ),
                (
                    'target_page',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='incoming_candidates',
                        to='linkplanner.page',
                    ),
                ),
            ],
            options={
                'ordering': ['id'],
                'constraints': [
                    models.CheckConstraint(
                        condition=models.Q(
                            ('is_rejected', True),
                            models.Q(('source_page', models.F('target_page')), _negated=True),
                            _connector='OR',
                        ),
                        name='linkplanner_accepted_not_self_link',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='BrokenUrl',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('url', models.URLField(max_length=1000)),
                ('status_code', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('checked_at', models.DateTimeField(auto_now_add=True)),
                (
                    'run',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='broken_urls',
                        to='linkplanner.generationrun',
                    ),
                ),
            ],
            options={'unique_together': {('run', 'url')}},
        ),
    ]
