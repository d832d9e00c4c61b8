"""asmreadcheck: read-mapping evidence for misassembly detection.

Public API is intentionally small; most users should use the CLI:

    asmreadcheck scan --bam reads_vs_assembly.bam --ref assembly.fa --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
