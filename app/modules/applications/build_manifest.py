"""Default commands and generated Dockerfiles per runtime category."""
from pydantic import BaseModel
from pathlib import Path
from typing import Dict, Optional
import logging
from app.modules.applications.schemas import RuntimeCategory

logger = logging.getLogger(__name__)


class RuntimeDefaults(BaseModel):
    build_command: str
    start_command: str
    port: int


RUNTIME_DEFAULTS: Dict[RuntimeCategory, RuntimeDefaults] = {
    RuntimeCategory.NODEJS: RuntimeDefaults(build_command="npm install", start_command="npm start", port=3000),
    RuntimeCategory.REACT: RuntimeDefaults(build_command="npm install && npm run build", start_command="npx serve -s build -l 3000", port=3000),
    RuntimeCategory.NEXTJS: RuntimeDefaults(build_command="npm install && npm run build", start_command="npm start", port=3000),
    RuntimeCategory.PYTHON: RuntimeDefaults(build_command="pip install -r requirements.txt", start_command="python app.py", port=8080),
    RuntimeCategory.STATIC: RuntimeDefaults(build_command="", start_command="npx serve -s . -l 8080", port=8080),
}


def _nodejs(start_command: str, port: int) -> str:
    return f"""FROM node:18-alpine
WORKDIR /app
COPY package*.json ./
RUN npm install --production
COPY . .
ENV PORT={port}
EXPOSE {port}
CMD {start_command}
"""


def _react(start_command: str, port: int) -> str:
    return f"""FROM node:18-alpine AS build
WORKDIR /app
COPY package*.json ./
RUN npm install
COPY . .
RUN npm run build

FROM nginx:alpine
COPY --from=build /app/build /usr/share/nginx/html
RUN sed -i 's/listen  *80;/listen {port};/' /etc/nginx/conf.d/default.conf
EXPOSE {port}
CMD ["nginx", "-g", "daemon off;"]
"""


def _nextjs(start_command: str, port: int) -> str:
    return f"""FROM node:18-alpine
WORKDIR /app
COPY package*.json ./
RUN npm install
COPY . .
RUN npm run build
ENV PORT={port}
EXPOSE {port}
CMD {start_command}
"""


def _python(start_command: str, port: int) -> str:
    return f"""FROM python:3.11-slim
WORKDIR /app
COPY . .
RUN if [ -f requirements.txt ]; then pip install --no-cache-dir -r requirements.txt; \\
    elif [ -f pyproject.toml ]; then pip install --no-cache-dir .; fi
ENV PORT={port}
EXPOSE {port}
CMD {start_command}
"""


def _static(start_command: str, port: int) -> str:
    return f"""FROM nginx:alpine
COPY . /usr/share/nginx/html
RUN sed -i 's/listen  *80;/listen {port};/' /etc/nginx/conf.d/default.conf
EXPOSE {port}
CMD ["nginx", "-g", "daemon off;"]
"""


DOCKERFILE_TEMPLATES = {
    RuntimeCategory.NODEJS: _nodejs,
    RuntimeCategory.REACT: _react,
    RuntimeCategory.NEXTJS: _nextjs,
    RuntimeCategory.PYTHON: _python,
    RuntimeCategory.STATIC: _static,
}

for _table in (RUNTIME_DEFAULTS, DOCKERFILE_TEMPLATES):
    _missing = set(RuntimeCategory) - set(_table)
    if _missing:
        raise RuntimeError(f"Runtime categories without a build entry: {sorted(c.value for c in _missing)}")


def defaults_for(category: RuntimeCategory) -> RuntimeDefaults:
    return RUNTIME_DEFAULTS[RuntimeCategory(category)]


def render_dockerfile(category: RuntimeCategory, start_command: Optional[str], port: int) -> str:
    category = RuntimeCategory(category)
    command = start_command or RUNTIME_DEFAULTS[category].start_command
    return DOCKERFILE_TEMPLATES[category](command, port)


def write_dockerfile(repo_path: Path, category: RuntimeCategory, start_command: Optional[str], port: int) -> Path:
    """Write (or overwrite) the Dockerfile at the repository root"""
    path = Path(repo_path) / "Dockerfile"
    path.write_text(render_dockerfile(category, start_command, port))
    logger.info(f"Generated Dockerfile for {RuntimeCategory(category).value} at {path}")
    return path
