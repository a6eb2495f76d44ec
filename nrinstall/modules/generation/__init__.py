"""Template-based script generation"""

from .conditions import evaluate_condition, parse_condition
from .template_engine import (
    TemplateScriptGenerator,
    RenderedScript,
    CompiledTemplate,
    compile_template,
)

__all__ = [
    "evaluate_condition",
    "parse_condition",
    "TemplateScriptGenerator",
    "RenderedScript",
    "CompiledTemplate",
    "compile_template",
]
