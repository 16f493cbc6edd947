"""Built-in tools served in-process: sandboxed reads of the manual-sources folder.

These sit beside the remote MCP tools in every run. The set is closed, so
dispatch is a lookup on :class:`LocalTool`; anything else goes to the remote
registry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from chief_of_staff.errors import ToolInvocationError
from chief_of_staff.registry import ToolDescriptor

logger = logging.getLogger(__name__)

MAX_FILES_IN_ERROR: int = 20
"""How many available files to list when a requested file is missing."""

TEXT_EXTENSIONS: frozenset[str] = frozenset({
    "", ".txt", ".md", ".csv", ".tsv", ".json", ".jsonl", ".yaml", ".yml", ".log", ".html", ".xml",
})

EXCEL_EXTENSIONS: frozenset[str] = frozenset({".xlsx", ".xlsm"})
PDF_EXTENSIONS: frozenset[str] = frozenset({".pdf"})

_FILE_TYPE_LABELS = {".csv": "CSV file", ".tsv": "CSV file", ".json": "JSON file"}


class LocalTool(str, Enum):
    READ_FILE = "read_file_from_manual_sources"
    LIST_FILES = "list_manual_sources_files"

    @classmethod
    def lookup(cls, name: str) -> "LocalTool | None":
        try:
            return cls(name)
        except ValueError:
            return None


class LocalToolbox:
    """Handlers for :class:`LocalTool`, rooted at the manual-sources directory.

    Args:
        root: The manual-sources directory. Reads never escape it.
        folder: Optional subfolder (from run parameters) that reads and
            listings are relative to.

    Raises:
        ValueError: ``folder`` resolves outside ``root``.
    """

    def __init__(self, root: str | Path, folder: str | None = None) -> None:
        self.root = Path(root).resolve()
        self.folder = folder or None
        self.base = (self.root / self.folder).resolve() if self.folder else self.root
        if self.base != self.root and not self.base.is_relative_to(self.root):
            raise ValueError(f"Invalid folder {folder!r}: must be inside the manual_sources folder")

    def descriptors(self) -> list[ToolDescriptor]:
        return [
            ToolDescriptor(
                name=LocalTool.READ_FILE.value,
                description=(
                    "Read a file from the manual_sources folder (including subdirectories). "
                    "CSV, JSON and text files return their content, Excel workbooks return "
                    "rows per sheet and PDFs return their extracted text. Use "
                    "list_manual_sources_files first to see what is available. If a folder "
                    "parameter is set for this run, filenames are relative to that folder."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "filename": {
                            "type": "string",
                            "description": (
                                "Path of the file relative to manual_sources (or to the "
                                'run\'s folder), e.g. "Q4/report.csv".'
                            ),
                        },
                    },
                    "required": ["filename"],
                },
            ),
            ToolDescriptor(
                name=LocalTool.LIST_FILES.value,
                description=(
                    "List all files available in the manual_sources folder and its "
                    "subdirectories, with size and modification time. If a folder parameter "
                    "is set for this run, only that folder is listed."
                ),
                input_schema={"type": "object", "properties": {}, "required": []},
            ),
        ]

    async def call(self, tool: LocalTool, arguments: dict[str, Any]) -> dict[str, Any]:
        if tool is LocalTool.READ_FILE:
            filename = arguments.get("filename")
            if not isinstance(filename, str) or not filename.strip():
                raise ToolInvocationError(tool.value, "Missing required argument: filename")
            return await asyncio.to_thread(self.read_file, filename)
        return await asyncio.to_thread(self.list_files)

    # -- handlers --------------------------------------------------------------

    def _resolve(self, filename: str) -> Path:
        path = (self.base / filename).resolve()
        if path != self.root and not path.is_relative_to(self.root):
            raise ToolInvocationError(
                LocalTool.READ_FILE.value,
                "Invalid file path: file must be in manual_sources folder",
            )
        return path

    def read_file(self, filename: str) -> dict[str, Any]:
        path = self._resolve(filename)
        if not path.is_file():
            available = self._walk_files(self.root) if self.root.is_dir() else []
            return {
                "error": f"File not found: {filename}",
                "availableFiles": ", ".join(available[:MAX_FILES_IN_ERROR]),
                "totalFiles": len(available),
                "hint": "Use list_manual_sources_files to see all available files including subdirectories",
            }

        stat = path.stat()
        modified = _isoformat(stat.st_mtime)
        ext = path.suffix.lower()
        if ext in EXCEL_EXTENSIONS:
            return _read_excel(path, filename, modified)
        if ext in PDF_EXTENSIONS:
            return _read_pdf(path, filename, modified, stat.st_size)
        if ext not in TEXT_EXTENSIONS:
            return {
                "file": filename,
                "error": f"Unsupported file type {ext!r}; export it as CSV or text first",
                "modified": modified,
                "size": stat.st_size,
            }

        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return {"file": filename, "error": f"Error reading file: {exc}"}

        result: dict[str, Any] = {
            "file": filename,
            "type": _FILE_TYPE_LABELS.get(ext, "Text file"),
            "modified": modified,
            "size": stat.st_size,
            "content": content,
        }
        if ext in {".csv", ".tsv"}:
            result["lines"] = content.count("\n") + 1
        elif ext == ".json":
            try:
                result["data"] = json.loads(content)
                del result["content"]
            except json.JSONDecodeError:
                pass
        return result

    def list_files(self) -> dict[str, Any]:
        if not self.root.is_dir():
            return {"error": "manual_sources folder does not exist", "path": str(self.root)}

        base = self.base
        if not base.is_dir():
            return {
                "error": f'Specified folder "{self.folder}" does not exist in manual_sources',
                "path": str(base),
                "availableFolders": self._walk_dirs(self.root),
            }

        files = []
        for relative in self._walk_files(base):
            stat = (base / relative).stat()
            files.append({
                "name": relative,
                "size": stat.st_size,
                "modified": _isoformat(stat.st_mtime),
                "type": Path(relative).suffix or "unknown",
                "isDirectory": False,
            })
        directories = [{"name": d + "/", "isDirectory": True} for d in self._walk_dirs(base)]
        return {
            "folder": f"manual_sources/{self.folder}" if self.folder else "manual_sources",
            "directories": directories,
            "files": files,
            "totalFiles": len(files),
            "totalDirectories": len(directories),
        }

    @staticmethod
    def _walk_files(base: Path) -> list[str]:
        return sorted(p.relative_to(base).as_posix() for p in base.rglob("*") if p.is_file())

    @staticmethod
    def _walk_dirs(base: Path) -> list[str]:
        return sorted(p.relative_to(base).as_posix() for p in base.rglob("*") if p.is_dir())


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


# -- binary formats ------------------------------------------------------------


def _cell_text(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (int, float, bool)):
        return value
    return str(value)


def _sheet_rows(sheet: Any) -> list[dict[str, Any]]:
    """Rows keyed by the header row; blank cells become ``""`` and blank rows are skipped."""
    rows = sheet.iter_rows(values_only=True)
    header = next(rows, None)
    if header is None:
        return []
    keys = [str(h) if h is not None else f"__EMPTY_{i}" for i, h in enumerate(header)]
    records = []
    for row in rows:
        if all(v is None for v in row):
            continue
        records.append({key: _cell_text(row[i] if i < len(row) else None) for i, key in enumerate(keys)})
    return records


def _read_excel(path: Path, filename: str, modified: str) -> dict[str, Any]:
    try:
        from openpyxl import load_workbook

        workbook = load_workbook(path, read_only=True, data_only=True)
        try:
            sheet_names = list(workbook.sheetnames)
            data = {name: _sheet_rows(workbook[name]) for name in sheet_names}
        finally:
            workbook.close()
    except Exception as exc:
        logger.warning("Could not parse Excel file %s: %s", filename, exc)
        return {
            "file": filename,
            "type": "Excel file",
            "error": f"Error parsing Excel file: {exc}",
            "modified": modified,
        }
    return {
        "file": filename,
        "type": "Excel file",
        "modified": modified,
        "sheetNames": sheet_names,
        "data": data,
        "summary": (
            f"Excel file with {len(sheet_names)} sheet(s): {', '.join(sheet_names)}. "
            "Data parsed successfully."
        ),
    }


def _read_pdf(path: Path, filename: str, modified: str, size: int) -> dict[str, Any]:
    try:
        from pypdf import PdfReader

        reader = PdfReader(path)
        pages = len(reader.pages)
        text = "\n\n".join(page.extract_text() or "" for page in reader.pages).strip()
        info = {str(k).lstrip("/"): str(v) for k, v in (reader.metadata or {}).items()}
        metadata = {"pdfVersion": reader.pdf_header.removeprefix("%PDF-")}
    except Exception as exc:
        logger.warning("Could not parse PDF file %s: %s", filename, exc)
        return {
            "file": filename,
            "type": "PDF file",
            "error": f"Error parsing PDF file: {exc}",
            "modified": modified,
            "size": size,
        }
    return {
        "file": filename,
        "type": "PDF file",
        "modified": modified,
        "size": size,
        "pages": pages,
        "text": text,
        "info": info,
        "metadata": metadata,
        "summary": (
            f"PDF file parsed successfully. {pages} page(s). "
            f"{len(text)} characters of text extracted."
        ),
    }
