"""
MPCA Prompt Manager

Jinja2 templates named `<name>.j2`. Repo templates in .mpca/prompts
shadow the built-in ones shipped in mpca/templates.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import jinja2
from loguru import logger
from pydantic import BaseModel, Field

from mpca.errors import InvalidTemplateContext, TemplateNotFound, TemplateRenderError


TEMPLATE_SUFFIX = ".j2"


class PromptContext(BaseModel):
    """Variables every workflow prompt can rely on."""
    repo_root: str
    feature_slug: str = ""
    spec_paths: list[str] = Field(default_factory=list)
    resume: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_template_vars(self) -> dict[str, Any]:
        data = self.model_dump(exclude={"extra"})
        data.update(self.extra)
        return data


class PromptManager:

    def __init__(self, prompt_dirs: tuple[Path, ...] | list[Path]):
        self.prompt_dirs = [Path(d) for d in prompt_dirs]
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader([str(d) for d in self.prompt_dirs]),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def render(self, name: str, context: PromptContext | dict[str, Any]) -> str:
        if isinstance(context, PromptContext):
            variables = context.to_template_vars()
        else:
            variables = dict(context)

        try:
            template = self.env.get_template(f"{name}{TEMPLATE_SUFFIX}")
        except jinja2.TemplateNotFound as e:
            raise TemplateNotFound(name) from e
        except jinja2.TemplateSyntaxError as e:
            raise TemplateRenderError(name, f"line {e.lineno}: {e.message}") from e

        try:
            text = template.render(**variables)
        except jinja2.UndefinedError as e:
            raise InvalidTemplateContext(name, e.message or str(e)) from e
        except jinja2.TemplateError as e:
            raise TemplateRenderError(name, str(e)) from e

        logger.debug(f"[PROMPTS] Rendered {name} ({len(text)} chars)")
        return text

    def list_templates(self) -> list[str]:
        names = {
            t[: -len(TEMPLATE_SUFFIX)]
            for t in self.env.list_templates(extensions=[TEMPLATE_SUFFIX.lstrip(".")])
        }
        return sorted(names)
