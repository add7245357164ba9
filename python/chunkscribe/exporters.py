from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from .merge import MergeResult

PAGE_SIZE_MM = (210, 297)
MARGINS_MM = {"top": 25, "bottom": 25, "left": 20, "right": 20}
NUMBER_COL_MM = 12
BODY_FONT_PT = 11


def _header_date(meta: dict[str, Any]) -> str:
    raw = str(meta.get("created_at") or "").strip()
    try:
        stamp = datetime.fromisoformat(raw.replace("Z", "+00:00")) if raw else datetime.now()
    except ValueError:
        stamp = datetime.now()
    return stamp.date().isoformat()


def _header_lines(meta: dict[str, Any], merged: MergeResult) -> list[str]:
    label = Path(str(meta.get("source_name") or meta.get("source_path") or "")).stem
    minutes = max(1, round(float(meta.get("duration_sec") or 0) / 60))
    lines = [
        f'File: "{label}"',
        f"Date: {_header_date(meta)}",
        f"Duration: {minutes} minutes",
        f"Segments: {merged.merged_count}",
    ]
    if merged.skipped:
        lines.append(f"Missing segments: {', '.join(merged.skipped)}")
    return lines


def numbered_paragraphs(merged: MergeResult) -> list[tuple[int, str]]:
    """Flatten merged segments into numbered, whitespace-normalised paragraphs."""
    paragraphs = (
        " ".join(block.split())
        for segment in merged.segments
        for block in segment.text.split("\n\n")
    )
    return list(enumerate((p for p in paragraphs if p), start=1))


def export_txt(meta: dict[str, Any], merged: MergeResult, output_path: Path) -> None:
    body = [f"{number}\t{text}" for number, text in numbered_paragraphs(merged)]
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text("\n".join(_header_lines(meta, merged) + [""] + body) + "\n", encoding="utf-8")


def export_docx(meta: dict[str, Any], merged: MergeResult, output_path: Path) -> None:
    try:
        from docx import Document
        from docx.enum.text import WD_ALIGN_PARAGRAPH
        from docx.shared import Mm, Pt
    except ImportError as exc:  # pragma: no cover - env dependent
        raise RuntimeError("python-docx is missing. Install the project dependencies.") from exc

    doc = Document()
    section = doc.sections[0]
    section.page_width, section.page_height = (Mm(v) for v in PAGE_SIZE_MM)
    for side, value in MARGINS_MM.items():
        setattr(section, f"{side}_margin", Mm(value))

    normal = doc.styles["Normal"]
    normal.font.size = Pt(BODY_FONT_PT)
    normal.paragraph_format.space_before = Pt(0)
    normal.paragraph_format.space_after = Pt(0)

    for line in _header_lines(meta, merged):
        doc.add_paragraph(line)
    doc.add_paragraph("")

    rows = numbered_paragraphs(merged)
    if not rows:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        doc.save(output_path)
        return

    text_width_mm = PAGE_SIZE_MM[0] - MARGINS_MM["left"] - MARGINS_MM["right"] - NUMBER_COL_MM
    widths = (Mm(NUMBER_COL_MM), Mm(text_width_mm))
    table = doc.add_table(rows=0, cols=2)
    table.autofit = False
    for number, text in rows:
        cells = table.add_row().cells
        for cell, width in zip(cells, widths):
            cell.width = width
        cells[0].paragraphs[0].add_run(str(number))
        cells[0].paragraphs[0].alignment = WD_ALIGN_PARAGRAPH.RIGHT
        cells[1].paragraphs[0].add_run(text)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    doc.save(output_path)
