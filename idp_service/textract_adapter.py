"""Adapter that flattens Textract block graphs into an extraction payload."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional


class AdapterError(RuntimeError):
    """Raised when a Textract response cannot be interpreted."""


class TextractResultAdapter:
    """Transform ``AnalyzeDocument`` / ``GetDocumentAnalysis`` output.

    The payload has four sections: ``pageCount``, ``lines``, ``keyValues``
    (form fields) and ``tables`` (row-major cell text).
    """

    def transform(self, response: Mapping[str, Any]) -> Dict[str, Any]:
        blocks = response.get("Blocks") if isinstance(response, Mapping) else None
        if not isinstance(blocks, list):
            raise AdapterError("Textract response does not contain a Blocks list")

        index: Dict[str, Mapping[str, Any]] = {}
        for block in blocks:
            if not isinstance(block, Mapping) or "Id" not in block or "BlockType" not in block:
                raise AdapterError("Textract block is missing Id or BlockType")
            index[block["Id"]] = block

        return {
            "pageCount": self._page_count(response, blocks),
            "lines": list(self._parse_lines(blocks)),
            "keyValues": list(self._parse_key_values(blocks, index)),
            "tables": list(self._parse_tables(blocks, index)),
        }

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    @staticmethod
    def _page_count(response: Mapping[str, Any], blocks: List[Mapping[str, Any]]) -> int:
        metadata = response.get("DocumentMetadata") or {}
        pages = metadata.get("Pages")
        if isinstance(pages, int):
            return pages
        return sum(1 for block in blocks if block["BlockType"] == "PAGE") or 1

    @staticmethod
    def _parse_lines(blocks: Iterable[Mapping[str, Any]]) -> Iterable[Dict[str, Any]]:
        for block in blocks:
            if block["BlockType"] != "LINE":
                continue
            yield {
                "text": block.get("Text", ""),
                "page": block.get("Page", 1),
                "confidence": _confidence(block),
            }

    def _parse_key_values(
        self, blocks: Iterable[Mapping[str, Any]], index: Mapping[str, Mapping[str, Any]]
    ) -> Iterable[Dict[str, Any]]:
        for block in blocks:
            if block["BlockType"] != "KEY_VALUE_SET" or "KEY" not in block.get("EntityTypes", []):
                continue
            key_text = self._child_text(block, index)
            value_text = ""
            value_confidence: Optional[float] = None
            for value_id in _related_ids(block, "VALUE"):
                value_block = index.get(value_id)
                if value_block is None:
                    raise AdapterError(f"KEY block {block['Id']} references unknown VALUE {value_id}")
                value_text = self._child_text(value_block, index)
                value_confidence = _confidence(value_block)
            yield {
                "key": key_text,
                "value": value_text,
                "page": block.get("Page", 1),
                "confidence": value_confidence if value_confidence is not None else _confidence(block),
            }

    def _parse_tables(
        self, blocks: Iterable[Mapping[str, Any]], index: Mapping[str, Mapping[str, Any]]
    ) -> Iterable[Dict[str, Any]]:
        for block in blocks:
            if block["BlockType"] != "TABLE":
                continue
            cells: Dict[tuple, str] = {}
            row_count = 0
            column_count = 0
            for cell_id in _related_ids(block, "CHILD"):
                cell = index.get(cell_id)
                # MERGED_CELL blocks repeat text already carried by their CELL children.
                if cell is None or cell["BlockType"] != "CELL":
                    continue
                row = int(cell.get("RowIndex", 1))
                column = int(cell.get("ColumnIndex", 1))
                row_count = max(row_count, row)
                column_count = max(column_count, column)
                cells[(row, column)] = self._child_text(cell, index)
            rows = [
                [cells.get((row, column), "") for column in range(1, column_count + 1)]
                for row in range(1, row_count + 1)
            ]
            yield {"page": block.get("Page", 1), "confidence": _confidence(block), "rows": rows}

    @staticmethod
    def _child_text(block: Mapping[str, Any], index: Mapping[str, Mapping[str, Any]]) -> str:
        words: List[str] = []
        for child_id in _related_ids(block, "CHILD"):
            child = index.get(child_id)
            if child is None:
                continue
            if child["BlockType"] == "WORD":
                words.append(child.get("Text", ""))
            elif child["BlockType"] == "SELECTION_ELEMENT":
                words.append(child.get("SelectionStatus", "NOT_SELECTED"))
        return " ".join(word for word in words if word)


def _related_ids(block: Mapping[str, Any], relationship_type: str) -> List[str]:
    ids: List[str] = []
    for relationship in block.get("Relationships") or []:
        if relationship.get("Type") == relationship_type:
            ids.extend(relationship.get("Ids") or [])
    return ids


def _confidence(block: Mapping[str, Any]) -> float:
    confidence = block.get("Confidence")
    if confidence is None:
        return 1.0
    try:
        return round(float(confidence) / 100.0, 4)
    except (TypeError, ValueError) as exc:
        raise AdapterError("Confidence values must be numeric") from exc


__all__ = ["AdapterError", "TextractResultAdapter"]
