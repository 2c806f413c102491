import logging
from typing import Any, Sequence

import pyarrow as pa
import pyarrow.parquet as pq

from core.settings import PARQUET_SCHEMA_VERSION
from vendor_ingestion.domain import RunContext, TransformedRow, WrittenFile
from vendor_ingestion.errors import WriteEncodingError, WriteIOError
from vendor_ingestion.scratch_layout import ScratchLayout

logger = logging.getLogger(__name__)


VENDOR_COLUMNS_ARROW: list[pa.Field] = [
    pa.field("vendor_id", pa.string(), nullable=False),
    pa.field("name", pa.string(), nullable=False),
    pa.field("city_id", pa.string(), nullable=False),
    pa.field("rating", pa.float64(), nullable=True),
    pa.field("delivery_fee", pa.float64(), nullable=True),
    pa.field("categories", pa.list_(pa.string()), nullable=True),
    pa.field("latitude", pa.float64(), nullable=True),
    pa.field("longitude", pa.float64(), nullable=True),
    pa.field("fetched_at", pa.timestamp("ms", tz="UTC"), nullable=False),
]

VENDOR_SCHEMA: pa.Schema = pa.schema(VENDOR_COLUMNS_ARROW)


def get_vendor_schema(*, city_id: str, run_id: str) -> pa.Schema:
    """The fixed schema plus file-level metadata, embedded in every file."""
    return VENDOR_SCHEMA.with_metadata({
        "city_id": city_id,
        "run_id": run_id,
        "schema_version": PARQUET_SCHEMA_VERSION,
    })


def rows_to_table(rows: Sequence[TransformedRow], schema: pa.Schema) -> pa.Table:
    columns: dict[str, list[Any]] = {f.name: [] for f in schema}
    for row in rows:
        for name, values in columns.items():
            values.append(getattr(row, name))

    table = pa.Table.from_pydict(columns, schema=schema)
    # from_pydict does not enforce nullability
    for f in schema:
        if not f.nullable and table.column(f.name).null_count:
            raise ValueError(f"Column '{f.name}' is not nullable but has {table.column(f.name).null_count} nulls")
    return table


class ParquetVendorWriter:
    """
    Serializes one city's rows into one Parquet file.

    All rows are buffered and written in a single pass to a tmp file which is then renamed
    into place, so a failed write never leaves a half-written file under the final name.
    No retries: a failed local write fails the city.
    """

    def __init__(self, layout: ScratchLayout, compression: str = "snappy"):
        self.layout = layout
        self.compression = compression

    def write(
        self,
        rows: Sequence[TransformedRow],
        ctx: RunContext,
        city_id: str,
        *,
        raw_vendors: list[Any] | None = None,
    ) -> WrittenFile:
        output_path = self.layout.get_parquet_path(ctx, city_id)
        tmp_path = self.layout.get_tmp_path_for(output_path)

        try:
            table = rows_to_table(rows, get_vendor_schema(city_id=city_id, run_id=ctx.run_id))
        except (pa.ArrowInvalid, pa.ArrowTypeError, TypeError, ValueError) as e:
            raise WriteEncodingError(f"City {city_id}: cannot encode rows: {e}") from e

        try:
            self.layout.ensure_directory(output_path.parent)
            pq.write_table(table, tmp_path, compression=self.compression)
            self.layout.promote(tmp_path, output_path)
            size_bytes = output_path.stat().st_size
        except OSError as e:
            self.layout.discard(tmp_path)
            raise WriteIOError(f"City {city_id}: cannot write {output_path}: {e}") from e
        except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
            self.layout.discard(tmp_path)
            raise WriteEncodingError(f"City {city_id}: cannot serialize parquet: {e}") from e

        raw_json_path = None
        if raw_vendors is not None:
            raw_json_path = self.layout.get_raw_json_path(ctx, city_id)
            try:
                self.layout.write_json(raw_json_path, raw_vendors)
            except OSError as e:
                self.layout.discard(self.layout.get_tmp_path_for(raw_json_path))
                raise WriteIOError(f"City {city_id}: cannot write {raw_json_path}: {e}") from e
            except (TypeError, ValueError) as e:
                self.layout.discard(self.layout.get_tmp_path_for(raw_json_path))
                raise WriteEncodingError(f"City {city_id}: cannot encode raw vendors: {e}") from e

        logger.info("City %s: wrote %s rows (%s bytes) to %s", city_id, table.num_rows, size_bytes, output_path)
        return WrittenFile(
            path=output_path,
            row_count=table.num_rows,
            size_bytes=size_bytes,
            raw_json_path=raw_json_path,
        )
