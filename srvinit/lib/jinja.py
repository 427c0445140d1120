import shlex
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined


def create_jinja_env(templates_dir: Path) -> Environment:
    env = Environment(
        loader=FileSystemLoader(templates_dir),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    env.filters['shquote'] = lambda value: shlex.quote(str(value))
    return env


def render_template(env: Environment, template_name: str, context: dict) -> str:
    template = env.get_template(template_name)
    return template.render(**context)
