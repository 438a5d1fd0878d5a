"""Setup script for the statement reconciliation engine."""
from setuptools import setup, find_packages

setup(
    name="statement-recon-engine",
    version="1.0.0",
    description="Bank and mobile-money statement reconciliation engine",
    author="Your Name",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.31.0",
        "pandas>=2.0.0",
        "python-dateutil>=2.8.2",
        "rapidfuzz>=3.5.0",
        "jellyfish>=1.0.0",
        "sqlalchemy>=2.0.0",
        "openpyxl>=3.1.0",
        "click>=8.1.0",
        "rich>=13.0.0",
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "recon=recon_engine.cli:main",
        ],
    },
)
