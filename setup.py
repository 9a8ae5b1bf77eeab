#!/usr/bin/env python
"""Setup configuration for the AYUSH Terminology Service."""

from setuptools import find_packages, setup

setup(
    name="ayush-terminology",
    version="1.0.0",
    description="NAMASTE and ICD-11 terminology search, mapping and FHIR operations",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn[standard]>=0.24.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.0.0",
        "structlog>=23.2.0",
        "httpx>=0.25.0",
        "python-multipart>=0.0.6",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ayush-terminology=ayush_terminology.main:main",
        ],
    },
)
