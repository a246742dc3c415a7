"""Printer backends the coordinator drives batches through."""
from __future__ import annotations

import asyncio
import contextlib
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Dict, List, Tuple

import structlog

from printdesk.documents.resolver import Document
from printdesk.orchestrator.errors import PrinterUnavailableError
from printdesk.orchestrator.jobs import PrintInstructions, QualityTier
from printdesk.printers.registry import PrinterProfile

LOGGER = structlog.get_logger(__name__)

_REQUEST_ID = re.compile(r"request id is (\S+)")

_CUPS_MEDIA = {"a4": "A4", "a3": "A3", "letter": "Letter", "legal": "Legal"}
_CUPS_QUALITY = {QualityTier.DRAFT: "3", QualityTier.NORMAL: "4", QualityTier.HIGH: "5"}


@dataclass(frozen=True)
class PrintReceipt:
    printer_id: str
    reference: str
    message: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class PrinterStatus:
    printer_id: str
    ready: bool
    detail: str = ""


class PrinterBackend(ABC):

    @abstractmethod
    async def print(self, document: Document, instructions: PrintInstructions, printer: PrinterProfile) -> PrintReceipt:
        """Send one document to ``printer``; raise ``PrinterUnavailableError`` on rejection."""

    @abstractmethod
    async def status(self, printer_id: str) -> PrinterStatus:
        """Report whether the printer can accept work right now."""


class LpPrinterBackend(PrinterBackend):
    """CUPS backend using ``lp`` and ``lpstat``; printer ids are CUPS queue names."""

    def __init__(self, *, lp: str = "lp", lpstat: str = "lpstat") -> None:
        self._lp = lp
        self._lpstat = lpstat

    def build_command(self, document: Document, instructions: PrintInstructions, printer: PrinterProfile) -> List[str]:
        command = [
            self._lp,
            "-d", printer.printer_id,
            "-n", str(instructions.copies),
            "-t", document.name,
            "-o", f"media={_CUPS_MEDIA[instructions.paper_size.value]}",
            "-o", f"print-quality={_CUPS_QUALITY[instructions.quality]}",
            "-o", "sides=two-sided-long-edge" if instructions.duplex else "sides=one-sided",
        ]
        if not instructions.requires_color:
            command += ["-o", "print-color-mode=monochrome"]
        command.append(str(document.path))
        return command

    async def _run(self, command: List[str]) -> Tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise PrinterUnavailableError(f"{command[0]} is not installed") from exc
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # A timed-out lp must not hand the job to CUPS afterwards.
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            LOGGER.warning("lp_killed", command=command[0], pid=process.pid)
            raise
        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def print(self, document: Document, instructions: PrintInstructions, printer: PrinterProfile) -> PrintReceipt:
        command = self.build_command(document, instructions, printer)
        code, stdout, stderr = await self._run(command)
        if code != 0:
            raise PrinterUnavailableError(
                f"lp rejected job for {printer.printer_id}: {stderr.strip() or f'exit code {code}'}"
            )
        match = _REQUEST_ID.search(stdout)
        reference = match.group(1) if match else ""
        LOGGER.info("lp_submitted", printer_id=printer.printer_id, reference=reference, document=document.name)
        return PrintReceipt(
            printer_id=printer.printer_id,
            reference=reference,
            message=f"Document sent to {printer.name or printer.printer_id}",
        )

    async def status(self, printer_id: str) -> PrinterStatus:
        code, stdout, stderr = await self._run([self._lpstat, "-p", printer_id])
        detail = (stdout or stderr).strip()
        ready = code == 0 and "disabled" not in detail.lower()
        return PrinterStatus(printer_id=printer_id, ready=ready, detail=detail)


class DryRunPrinterBackend(PrinterBackend):
    """Logs what would be printed and reports every printer as ready."""

    async def print(self, document: Document, instructions: PrintInstructions, printer: PrinterProfile) -> PrintReceipt:
        reference = f"dry-run-{uuid.uuid4().hex[:8]}"
        LOGGER.info(
            "dry_run_print",
            printer_id=printer.printer_id,
            document=str(document.path),
            copies=instructions.copies,
            paper_size=instructions.paper_size.value,
            paper_type=instructions.paper_type.value,
            color_pages=instructions.color_pages,
        )
        return PrintReceipt(printer_id=printer.printer_id, reference=reference, message="dry run")

    async def status(self, printer_id: str) -> PrinterStatus:
        return PrinterStatus(printer_id=printer_id, ready=True, detail="dry run")
