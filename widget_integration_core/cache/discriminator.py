"""
Discriminator resolution.

A discriminator identifies one shared cache line for an integration. Widget
instances that resolve to the same discriminator share fetched data, so the
resolution must be deterministic and free of I/O.
"""

from typing import Any, Mapping, Optional

from ..constants import SharingPolicy
from ..exceptions import ErrorCode, MissingDiscriminatorKeyError, ValidationError
from ..schemas.integration_schema import IntegrationDefinition


def format_option_value(value: Any, field: Optional[str] = None) -> str:
    """
    Render a widget option value for use in a discriminator.

    Raises:
        ValidationError: The value is not a string, number or boolean
    """
    # bool before int, bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return str(value)
    raise ValidationError(
        f"Unsupported widget option type: {type(value).__name__}",
        field=field,
        error_code=ErrorCode.TYPE_MISMATCH,
    )


def resolve_discriminator(
    definition: IntegrationDefinition,
    organization_id: str,
    widget_options: Optional[Mapping[str, Any]] = None,
    widget_config_id: Optional[str] = None,
) -> str:
    """
    Compute the discriminator ID for a widget instance.

    Args:
        definition: Integration the widget uses
        organization_id: Organization owning the widget instance
        widget_options: Options configured on the widget instance
        widget_config_id: ID of the widget instance

    Returns:
        The organization ID for organization sharing,
        ``"{organization_id}:{key}:{value}"`` for option sharing, or the
        widget instance ID when nothing is shared.

    Raises:
        MissingDiscriminatorKeyError: The option (or widget instance ID) needed
            by the sharing policy is absent
        ValidationError: The option value is not a scalar
    """
    policy = definition.discriminator_type

    if policy == SharingPolicy.ORGANIZATION:
        return organization_id

    if policy == SharingPolicy.WIDGET_OPTION:
        key = definition.discriminator_key
        value = (widget_options or {}).get(key)
        if value is None:
            raise MissingDiscriminatorKeyError(definition.id, key, tenant_id=organization_id)
        return f"{organization_id}:{key}:{format_option_value(value, field=key)}"

    if not widget_config_id:
        raise MissingDiscriminatorKeyError(definition.id, "widget_config_id", tenant_id=organization_id)
    return widget_config_id


def validate_widget_options(
    definition: IntegrationDefinition, widget_options: Mapping[str, Any]
) -> None:
    """
    Check at configuration time that a widget's options can be resolved.

    Raises:
        MissingDiscriminatorKeyError: The sharing option is missing
        ValidationError: Any option value is not a scalar
    """
    for key, value in widget_options.items():
        if value is not None:
            format_option_value(value, field=key)

    if definition.discriminator_type == SharingPolicy.WIDGET_OPTION:
        if widget_options.get(definition.discriminator_key) is None:
            raise MissingDiscriminatorKeyError(definition.id, definition.discriminator_key)
