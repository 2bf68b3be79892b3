"""URL configuration for the linkplanner app."""

from django.urls import path

from . import views

app_name = 'linkplanner'

urlpatterns = [
    path('generation/start/', views.start_generation, name='generation_start'),
    path('generation/<uuid:run_id>/progress/', views.generation_progress, name='generation_progress'),
    path('generation/<uuid:run_id>/stream/', views.generation_stream, name='generation_stream'),
    path('generation/<uuid:run_id>/candidates/', views.generation_candidates, name='generation_candidates'),
    path('generation/<uuid:run_id>/cancel/', views.cancel_generation, name='generation_cancel'),
    path('projects/<int:project_id>/runs/', views.project_runs, name='project_runs'),
]
