"""gmmrecal: Gaussian-mixture variant quality score recalibration.

Public API is intentionally small; most users should use the CLI:

    gmmrecal recalibrate --vcf calls.vcf.gz --resource ... -an QD -an FS --outdir ...
    gmmrecal apply --vcf calls.vcf.gz --recal out/recal.vcf.gz --tranches-file out/tranches.csv ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
