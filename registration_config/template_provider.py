"""
ConfiguredTemplateProvider -- TemplateProvider backed by the YAML set.

Translates ``TemplateDef``/``FieldDef`` into the kernel's
``TemplateDefinition``/``TemplateField`` once, at construction.
"""

from __future__ import annotations

from registration_config.schema import FieldDef, RegistrationConfig, TemplateDef
from registration_kernel.domain.external import (
    FieldRules,
    FieldType,
    TemplateDefinition,
    TemplateField,
)
from registration_kernel.exceptions import TemplateNotFoundError


def to_template_field(f: FieldDef) -> TemplateField:
    return TemplateField(
        name=f.name,
        label=f.label,
        field_type=FieldType(f.field_type),
        required=f.required,
        rules=FieldRules(
            max_length=f.max_length,
            min_value=f.min_value,
            max_value=f.max_value,
            pattern=f.pattern,
            options=f.options,
        ),
        example=f.example,
    )


def to_template_definition(t: TemplateDef) -> TemplateDefinition:
    return TemplateDefinition(
        template_id=t.template_id,
        name=t.name,
        table_name=t.table_name,
        fields=tuple(to_template_field(f) for f in t.fields),
        key_fields=t.key_fields,
        allow_bulk_import=t.allow_bulk_import,
    )


class ConfiguredTemplateProvider:
    """Read-only template metadata from a loaded configuration set."""

    def __init__(self, config: RegistrationConfig) -> None:
        self._templates = {
            t.template_id: to_template_definition(t) for t in config.templates
        }

    def get_template(self, template_id: str) -> TemplateDefinition:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def template_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._templates))
