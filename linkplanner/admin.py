from django.contrib import admin

from .models import BrokenUrl, GenerationRun, ImportJob, LinkCandidate, Page, Project


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('name', 'domain', 'owner', 'created_at')
    search_fields = ('name', 'domain')


@admin.register(ImportJob)
class ImportJobAdmin(admin.ModelAdmin):
    list_display = ('project', 'status', 'created_at', 'finished_at')
    list_filter = ('status',)


@admin.register(Page)
class PageAdmin(admin.ModelAdmin):
    list_display = ('url', 'job', 'click_depth', 'in_degree', 'out_degree', 'is_hub')
    list_filter = ('is_hub',)
    search_fields = ('url', 'title')


@admin.register(GenerationRun)
class GenerationRunAdmin(admin.ModelAdmin):
    list_display = ('run_id', 'project', 'status', 'phase', 'percent', 'generated', 'rejected', 'started_at')
    list_filter = ('status',)
    readonly_fields = ('run_id', 'worker_id', 'started_at', 'updated_at', 'finished_at')


@admin.register(LinkCandidate)
class LinkCandidateAdmin(admin.ModelAdmin):
    list_display = ('source_url', 'target_url', 'anchor_text', 'scenario', 'is_rejected', 'rejection_reason')
    list_filter = ('scenario', 'is_rejected', 'rejection_reason')
    search_fields = ('source_url', 'target_url', 'anchor_text')


@admin.register(BrokenUrl)
class BrokenUrlAdmin(admin.ModelAdmin):
    list_display = ('url', 'run', 'status_code', 'checked_at')
