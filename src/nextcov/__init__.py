"""nextcov: V8 coverage to Istanbul coverage.

Usage:
    from nextcov import CoverageConverter, V8CoverageReader, load_config

    config = load_config()
    reader = V8CoverageReader(config.reader.exclude_patterns)
    coverage = reader.filter_entries(reader.read_from_directory(".coverage-cache"))
    coverage_map = CoverageConverter(config).convert(coverage)
    print(coverage_map.summary().to_dict())
"""

from nextcov.config.loader import load_config
from nextcov.convert.converter import CoverageConverter
from nextcov.coverage.istanbul import CoverageMap, CoverageSummary, FileCoverage
from nextcov.coverage.reader import V8CoverageReader

__version__ = "0.1.0"

__all__ = [
    "CoverageConverter",
    "CoverageMap",
    "CoverageSummary",
    "FileCoverage",
    "V8CoverageReader",
    "load_config",
]
