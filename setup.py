"""
Setup script for PoolForge.
"""

from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup

ROOT = Path(__file__).resolve().parent
README = ROOT / "README.md"

long_description = ""
if README.exists():
    long_description = README.read_text(encoding="utf-8")

setup(
    name="poolforge",
    version="1.0.0",
    description="Storage pool setup and disk provisioning client for home NAS backends",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="PoolForge Team",
    license="MIT",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5.0",
        "structlog>=24.1.0",
        "click>=8.1.0",
        "rich>=13.7.0",
        "humanize>=4.9.0",
        "httpx>=0.27.0",
    ],
    extras_require={
        "dev": [
            "pytest>=8.0.0",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "ruff>=0.2.0",
            "mypy>=1.8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "poolforge=poolforge.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: System Administrators",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Filesystems",
    ],
)
