"""Declarative infrastructure template engines."""

from stagecraft.templates.engine import (
    CdkTemplateEngine,
    StackTemplate,
    TemplateEngine,
    read_stack_outputs,
)

__all__ = ["CdkTemplateEngine", "StackTemplate", "TemplateEngine", "read_stack_outputs"]
