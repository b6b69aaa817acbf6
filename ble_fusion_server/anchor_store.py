from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, List, Optional, cast

import pandas as pd

from .models import Anchor


logger = logging.getLogger(__name__)

POSITION_COLUMNS = ["floor", "x", "y", "z"]
HEALTH_COLUMNS = ["battery", "firmware", "hops", "last_seen"]
COLUMNS = POSITION_COLUMNS + HEALTH_COLUMNS


class AnchorStore:
    """
    Fixed anchors, kept in a DataFrame indexed by anchor id.

    Position solving reads a per-floor dict snapshot that is rebuilt whenever
    the table changes, so the hot path never touches pandas.
    """

    def __init__(self):
        self._df = self._empty()
        self._by_floor: Dict[int, Dict[str, Anchor]] = {}

    @staticmethod
    def _empty() -> pd.DataFrame:
        df = pd.DataFrame(columns=COLUMNS)
        df.index.name = "anchor_id"
        return df

    # ---- Utils ----
    def _normalize_df(self, df: pd.DataFrame) -> pd.DataFrame:
        if "id" in df.columns and "anchor_id" not in df.columns:
            df = df.rename(columns={"id": "anchor_id"})
        if "anchor_id" not in df.columns:
            raise KeyError("anchor table is missing an 'anchor_id' column")
        for col in ["x", "y", "z"]:
            if col not in df.columns:
                df[col] = 0.0
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)
        if "floor" not in df.columns:
            df["floor"] = 1
        df["floor"] = pd.to_numeric(df["floor"], errors="coerce").fillna(1).astype(int)
        for col in HEALTH_COLUMNS:
            if col not in df.columns:
                df[col] = None
        df = df[["anchor_id"] + COLUMNS].copy()
        df[HEALTH_COLUMNS] = df[HEALTH_COLUMNS].astype(object)
        df = df.drop_duplicates(subset=["anchor_id"], keep="last").set_index("anchor_id")
        df.index = df.index.astype(str)
        df.index.name = "anchor_id"
        return df.sort_index()

    def _reindex(self) -> None:
        by_floor: Dict[int, Dict[str, Anchor]] = {}
        for anchor in self.all():
            by_floor.setdefault(anchor.floor, {})[anchor.anchor_id] = anchor
        self._by_floor = by_floor

    @staticmethod
    def _opt(value: Any, cast_to=float):
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return None
        return cast_to(value)

    def _row_to_anchor(self, anchor_id: str, row: pd.Series) -> Anchor:
        return Anchor(
            anchor_id=str(anchor_id),
            x=float(row.at["x"]),
            y=float(row.at["y"]),
            z=float(row.at["z"]),
            floor=int(row.at["floor"]),
            battery=self._opt(row.at["battery"]),
            firmware=self._opt(row.at["firmware"], str),
            hops=self._opt(row.at["hops"], int),
            last_seen=self._opt(row.at["last_seen"]),
        )

    # ---- Load ----
    def load_floors(self, floors: Iterable[Dict[str, Any]]) -> None:
        """Replace the table with the anchors listed in the floors configuration."""
        rows = []
        for floor in floors or []:
            floor_id = int(floor.get("id", 1))
            for a in floor.get("anchors") or []:
                rows.append(
                    {
                        "anchor_id": str(a["id"]),
                        "floor": floor_id,
                        "x": a.get("x", 0.0),
                        "y": a.get("y", 0.0),
                        "z": a.get("z", 0.0),
                    }
                )
        previous = self._df
        self._df = self._normalize_df(pd.DataFrame(rows, columns=["anchor_id"] + POSITION_COLUMNS)) if rows else self._empty()
        # health metadata survives a reload for anchors that are still configured
        kept = previous.index.intersection(self._df.index)
        if len(kept):
            self._df.loc[kept, HEALTH_COLUMNS] = previous.loc[kept, HEALTH_COLUMNS]
        self._reindex()

    def load_csv(self, csv_path: str) -> int:
        """Merge anchors from a CSV (anchor_id|id, floor, x, y, z). Returns rows read."""
        if not csv_path or not os.path.exists(csv_path):
            return 0
        try:
            df = self._normalize_df(pd.read_csv(csv_path, dtype=str))
        except (OSError, KeyError, ValueError, pd.errors.ParserError) as e:
            logger.error("Failed to load anchor CSV %s: %s", csv_path, e)
            return 0
        self._df = pd.concat([self._df[~self._df.index.isin(df.index)], df]).sort_index()
        self._reindex()
        logger.info("Loaded %d anchors from %s", len(df), csv_path)
        return len(df)

    def save_csv(self, csv_path: str) -> None:
        os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
        self._df.to_csv(csv_path, index=True, index_label="anchor_id", encoding="utf-8")

    # ---- CRUD ----
    def upsert(self, anchor_id: str, x: float, y: float, z: float = 0.0, floor: int = 1) -> None:
        if anchor_id in self._df.index:
            self._df.loc[anchor_id, POSITION_COLUMNS] = [int(floor), float(x), float(y), float(z)]
        else:
            row = {col: None for col in COLUMNS}
            row.update({"floor": int(floor), "x": float(x), "y": float(y), "z": float(z)})
            self._df.loc[anchor_id] = pd.Series(row)
        self._reindex()

    def update_health(
        self,
        anchor_id: str,
        battery: Optional[float] = None,
        firmware: Optional[str] = None,
        hops: Optional[int] = None,
        last_seen: Optional[float] = None,
    ) -> bool:
        if anchor_id not in self._df.index:
            return False
        for col, value in (("battery", battery), ("firmware", firmware), ("hops", hops), ("last_seen", last_seen)):
            if value is not None:
                self._df.at[anchor_id, col] = value
        self._reindex()
        return True

    def delete(self, anchor_id: str) -> bool:
        if anchor_id in self._df.index:
            self._df = self._df.drop(index=anchor_id)
            self._reindex()
            return True
        return False

    # ---- Accessors ----
    def has(self, anchor_id: str) -> bool:
        return anchor_id in self._df.index

    def get(self, anchor_id: str) -> Optional[Anchor]:
        if anchor_id not in self._df.index:
            return None
        return self._row_to_anchor(anchor_id, cast(pd.Series, self._df.loc[anchor_id]))

    def for_floor(self, floor: int) -> Dict[str, Anchor]:
        return self._by_floor.get(floor, {})

    def all(self) -> List[Anchor]:
        return [self._row_to_anchor(str(k), cast(pd.Series, row)) for k, row in self._df.iterrows()]

    def to_records(self) -> List[Dict[str, Any]]:
        return [a.to_dict() for a in self.all()]

    def __len__(self) -> int:
        return len(self._df)
