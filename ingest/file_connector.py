# ingest/file_connector.py
import json
import logging
from io import BytesIO
from typing import Optional

import pandas as pd

from errors import FileFormatError, NoDataError

logger = logging.getLogger(__name__)


class FileConnector:
    """Reads an uploaded lab result file into a DataFrame of text cells."""

    def __init__(self, filename: Optional[str]):
        self.filename = filename or ""

    def read(self, content: bytes) -> pd.DataFrame:
        if content is None or len(content) == 0:
            raise NoDataError()

        name = self.filename.lower()
        if name.endswith(".json"):
            frame = self._read_json(content)
        elif name.endswith(".csv") or name.endswith(".txt") or not name:
            frame = self._read_csv(content)
        else:
            raise FileFormatError(f"Unsupported file type: {self.filename}", self.filename)

        if frame.empty:
            raise NoDataError()
        logger.info(f"Read {len(frame)} rows from {self.filename or 'upload'}")
        return frame

    def _read_csv(self, content: bytes) -> pd.DataFrame:
        try:
            # Keep everything as text: patient numbers have leading zeros
            return pd.read_csv(
                BytesIO(content),
                dtype=str,
                keep_default_na=False,
                # blank lines stay in the frame so row numbers match file lines
                skip_blank_lines=False,
                skipinitialspace=True,
                encoding="utf-8-sig",
            )
        except pd.errors.EmptyDataError:
            raise NoDataError()
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise FileFormatError(f"Failed to parse CSV: {e}", self.filename)

    def _read_json(self, content: bytes) -> pd.DataFrame:
        try:
            data = json.loads(content.decode("utf-8-sig"))
        except (ValueError, UnicodeDecodeError) as e:
            raise FileFormatError(f"Invalid JSON format: {e}", self.filename)

        # Accept a bare list or a {"labResults": [...]} envelope
        if isinstance(data, dict):
            data = data.get("labResults", data.get("rows", [data]))
        if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
            raise FileFormatError("JSON upload must be a list of row objects", self.filename)
        return pd.DataFrame(data, dtype=object)
