from __future__ import annotations

import logging
from pathlib import Path

from .errors import LayoutError
from .fileio import atomic_output
from .gltf_layout import LayoutPlan


logger = logging.getLogger(__name__)


def write_buffer(plan: LayoutPlan, path: Path) -> int:
    """Write every block of `plan` to `path` in plan order, padded exactly as the JSON declares."""
    plan.check()
    offsets = plan.offsets()
    written = 0
    with atomic_output(path, binary=True) as f:
        for k, block in enumerate(plan.blocks):
            if written != offsets[k]:
                raise LayoutError(f"Block {k} ({block.name}) written at {written}, declared at {offsets[k]}")
            payload = block.to_bytes()
            f.write(payload)
            written += len(payload)
        if written != plan.total_length:
            raise LayoutError(f"Wrote {written} bytes, declared {plan.total_length}")
    logger.debug(f"Wrote {written} bytes in {len(plan.blocks)} blocks to {path}")
    return written
