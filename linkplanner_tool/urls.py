"""Root URL configuration for linkplanner_tool."""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/', include('linkplanner.urls')),
]
