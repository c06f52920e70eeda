"""Message template rendering and merge variables."""
from careflow.templates.renderer import TemplateRenderer
from careflow.templates.variables import build_merge_variables

__all__ = ["TemplateRenderer", "build_merge_variables"]
