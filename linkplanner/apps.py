from django.apps import AppConfig


class LinkplannerConfig(AppConfig):
    """Configuration for the linkplanner Django app."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'linkplanner'
