from django.contrib import admin
from django.urls import path

from fleet_orchestrator import views

urlpatterns = [
    path("admin/", admin.site.urls),
    path(
        "api/operation-templates/<int:template_id>/operations",
        views.template_operations,
        name="template-operations",
    ),
    path(
        "api/operation-templates/<int:template_id>/operation-groups",
        views.template_operation_groups,
        name="template-operation-groups",
    ),
    path("api/operations/<int:operation_id>", views.operation_detail, name="operation-detail"),
    path("api/operations/<int:operation_id>/events", views.operation_event, name="operation-event"),
]
