from django.contrib import admin, messages

from .models import (
    App,
    Directive,
    DirectiveTemplate,
    Environment,
    Machine,
    MachineGrant,
    MachineOperation,
    Operation,
    OperationRestriction,
    OperationTemplate,
)


class EnvironmentInline(admin.TabularInline):
    model = Environment
    extra = 0


@admin.register(App)
class AppAdmin(admin.ModelAdmin):
    list_display = ("name", "created_at")
    search_fields = ("name",)
    inlines = [EnvironmentInline]


@admin.register(Machine)
class MachineAdmin(admin.ModelAdmin):
    list_display = ("hostname", "app", "environment", "created_at")
    list_filter = ("app", "environment")
    search_fields = ("hostname",)


@admin.register(MachineGrant)
class MachineGrantAdmin(admin.ModelAdmin):
    list_display = ("user", "machine", "operation_template", "created_at")
    list_filter = ("operation_template",)


@admin.register(DirectiveTemplate)
class DirectiveTemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "app", "pluggable", "updated_at")
    list_filter = ("app", "pluggable")
    search_fields = ("name", "command")


class OperationRestrictionInline(admin.TabularInline):
    model = OperationRestriction
    extra = 0
    fields = ("environment", "limit", "limit_cycle")


@admin.register(OperationTemplate)
class OperationTemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "app", "expression", "pre_admission_hook", "updated_at")
    list_filter = ("app",)
    search_fields = ("name", "description")
    inlines = [OperationRestrictionInline]


class DirectiveInline(admin.TabularInline):
    model = Directive
    extra = 0
    fields = ("machine", "step_index", "directive_template", "pluggable", "state", "pre_id", "next_id")
    readonly_fields = fields


@admin.register(Operation)
class OperationAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "app", "operator", "state", "previous_id", "created_at")
    list_filter = ("state", "app")
    search_fields = ("name",)
    readonly_fields = ("previous_id", "job_id", "created_at", "updated_at")
    inlines = [DirectiveInline]
    actions = ["enable_operations"]

    def enable_operations(self, request, queryset):
        enabled = 0
        for operation in queryset:
            if operation.enable():
                enabled += 1
        self.message_user(request, f"Enabled {enabled} operation(s).", messages.SUCCESS)

    enable_operations.short_description = "Enable selected operation(s)"


@admin.register(MachineOperation)
class MachineOperationAdmin(admin.ModelAdmin):
    list_display = ("machine", "operation", "operation_template", "created_at")
    list_filter = ("operation_template",)


@admin.register(Directive)
class DirectiveAdmin(admin.ModelAdmin):
    list_display = ("id", "operation", "machine", "step_index", "pluggable", "state", "pre_id", "next_id")
    list_filter = ("state", "pluggable")
