"""Built-in tool execution implementations."""

import asyncio
import json
import logging
import re
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from tactus_agent.core.errors import ToolExecutionError
from tactus_agent.core.types import SkillInfo
from tactus_agent.tools.builtin_tools import (
    ACTIVATE_SKILL,
    EXECUTE_SKILL_SCRIPT,
    EXTRACT_PAGE_CONTENT,
    READ_SKILL_FILE,
    get_activate_skill_tool,
    get_execute_skill_script_tool,
    get_extract_page_content_tool,
    get_read_skill_file_tool,
)
from tactus_agent.tools.page_content import (
    DEFAULT_CONTENT_LIMIT,
    PageExtractor,
    PageSource,
    format_extracted_content,
    truncate_content,
)

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
READABLE_SKILL_DIRS = ("references", "assets")
SCRIPT_TIMEOUT = 60

_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*\n?", re.DOTALL)

_SCRIPT_BOOTSTRAP = (
    "import json, runpy, sys; "
    "runpy.run_path(sys.argv[1], init_globals={'__args__': json.loads(sys.argv[2])}, "
    "run_name='__main__')"
)


class SkillHost(ABC):
    """Where skills live and how their scripts run."""

    @abstractmethod
    def list_skills(self) -> List[SkillInfo]:
        pass

    @abstractmethod
    async def activate(self, skill_name: str) -> str:
        """Return the full instructions of a skill."""

    @abstractmethod
    async def execute_script(
        self, skill_name: str, script_path: str, arguments: Dict[str, Any]
    ) -> str:
        pass

    @abstractmethod
    async def read_file(self, skill_name: str, file_path: str) -> str:
        pass


def parse_skill_file(text: str):
    """Split a SKILL.md into ``(metadata, body)``."""
    match = _FRONTMATTER.match(text)
    if not match:
        return {}, text
    metadata = {}
    for line in match.group(1).splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            metadata[key.strip()] = value.strip().strip("\"'")
    return metadata, text[match.end() :]


class DirectorySkillHost(SkillHost):
    """Skills stored as folders containing a SKILL.md, scripts/, references/ and assets/."""

    def __init__(self, root: Path, script_timeout: int = SCRIPT_TIMEOUT):
        self.root = Path(root)
        self.script_timeout = script_timeout

    def _skills(self) -> Dict[str, Path]:
        skills = {}
        if not self.root.is_dir():
            return skills
        for folder in sorted(self.root.iterdir()):
            skill_file = folder / SKILL_FILE
            if not skill_file.is_file():
                continue
            metadata, _ = parse_skill_file(skill_file.read_text(encoding="utf-8"))
            skills[metadata.get("name") or folder.name] = folder
        return skills

    def _skill_dir(self, skill_name: str) -> Path:
        folder = self._skills().get(skill_name)
        if folder is None:
            raise ToolExecutionError(f"Skill not found: {skill_name}")
        return folder

    def _resolve_inside(self, folder: Path, relative: str) -> Path:
        path = (folder / relative).resolve()
        if folder.resolve() not in path.parents:
            raise ToolExecutionError(f"Path escapes the skill directory: {relative}")
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {relative}")
        return path

    def list_skills(self) -> List[SkillInfo]:
        skills = []
        for name, folder in self._skills().items():
            metadata, _ = parse_skill_file((folder / SKILL_FILE).read_text(encoding="utf-8"))
            skills.append(SkillInfo(name=name, description=metadata.get("description", "")))
        return skills

    async def activate(self, skill_name: str) -> str:
        folder = self._skill_dir(skill_name)
        _, body = parse_skill_file((folder / SKILL_FILE).read_text(encoding="utf-8"))
        return body.strip()

    async def execute_script(
        self, skill_name: str, script_path: str, arguments: Dict[str, Any]
    ) -> str:
        folder = self._skill_dir(skill_name)
        path = self._resolve_inside(folder, script_path)
        if path.suffix != ".py":
            raise ToolExecutionError(f"Only Python scripts can be executed: {script_path}")

        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            _SCRIPT_BOOTSTRAP,
            str(path),
            json.dumps(arguments or {}),
            cwd=str(folder),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.script_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ToolExecutionError(
                f"Script timed out after {self.script_timeout} seconds"
            )

        output = stdout.decode("utf-8", errors="replace")
        if stderr:
            output += f"\nSTDERR:\n{stderr.decode('utf-8', errors='replace')}"
        if process.returncode != 0:
            raise ToolExecutionError(
                f"Script exited with code {process.returncode}\n{output}".strip()
            )
        return output or "Script completed with no output"

    async def read_file(self, skill_name: str, file_path: str) -> str:
        folder = self._skill_dir(skill_name)
        path = self._resolve_inside(folder, file_path)
        relative = path.relative_to(folder.resolve())
        if relative.parts[0] not in READABLE_SKILL_DIRS:
            raise ToolExecutionError(
                f"Only files under {', '.join(READABLE_SKILL_DIRS)} can be read: {file_path}"
            )
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise ToolExecutionError(f"Not a text file: {file_path}")


class BuiltinToolExecutor:
    """Handlers for the built-in tools, delegating to host collaborators."""

    def __init__(
        self,
        page_source: Optional[PageSource] = None,
        extractor: Optional[PageExtractor] = None,
        skill_host: Optional[SkillHost] = None,
        page_content_limit: int = DEFAULT_CONTENT_LIMIT,
        raw_extract_sites: Optional[List[str]] = None,
    ):
        self.page_source = page_source
        self.extractor = extractor or PageExtractor()
        self.skill_host = skill_host
        self.page_content_limit = page_content_limit
        self.raw_extract_sites = raw_extract_sites or []

    def _use_raw_extract(self, url: str) -> bool:
        return any(site and site in url for site in self.raw_extract_sites)

    async def extract_page_content(self, args: Dict[str, Any]) -> str:
        """Extract the current page as Markdown with metadata."""
        if self.page_source is None:
            raise ToolExecutionError("No page is available to extract")

        html, url = await self.page_source.get_page()
        content = self.extractor.extract(html, url, use_raw_extract=self._use_raw_extract(url))
        logger.info(f"Extracted {len(content.content)} characters from {url or 'page'}")
        return truncate_content(format_extracted_content(content), self.page_content_limit)

    def _require_skills(self) -> SkillHost:
        if self.skill_host is None:
            raise ToolExecutionError("No skills are installed")
        return self.skill_host

    async def activate_skill(self, args: Dict[str, Any]) -> str:
        skill_name = args.get("skill_name", "")
        instructions = await self._require_skills().activate(skill_name)
        return f'<skill name="{skill_name}">\n{instructions}\n</skill>'

    async def execute_skill_script(self, args: Dict[str, Any]) -> str:
        return await self._require_skills().execute_script(
            args.get("skill_name", ""),
            args.get("script_path", ""),
            args.get("arguments") or {},
        )

    async def read_skill_file(self, args: Dict[str, Any]) -> str:
        return await self._require_skills().read_file(
            args.get("skill_name", ""), args.get("file_path", "")
        )

    def list_skills(self) -> List[SkillInfo]:
        return self.skill_host.list_skills() if self.skill_host else []

    def register_all(self, registry):
        """Register every built-in tool with its handler, in declaration order."""
        handlers = {
            EXTRACT_PAGE_CONTENT: (get_extract_page_content_tool(), self.extract_page_content),
            ACTIVATE_SKILL: (get_activate_skill_tool(), self.activate_skill),
            EXECUTE_SKILL_SCRIPT: (get_execute_skill_script_tool(), self.execute_skill_script),
            READ_SKILL_FILE: (get_read_skill_file_tool(), self.read_skill_file),
        }
        for descriptor, handler in handlers.values():
            registry.register_local(descriptor, handler)
