"""Setup script for the Marketplace Settlement Engine."""

from setuptools import setup, find_packages

setup(
    name="marketplace-settlement",
    version="0.1.0",
    description="Marketplace settlement engine: fee splits, held funds and seller payouts via Stripe Connect",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["settlement", "settlement.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
            "httpx>=0.27.0",
        ],
        "load": [
            "locust>=2.20.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "settlement-release-worker=settlement.workers.release_worker:main",
            "settlement-reconciliation-worker=settlement.workers.reconciliation_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
