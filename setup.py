"""Setup script for the marketplace order placement service."""

from setuptools import setup, find_packages

setup(
    name="marketplace-orders",
    version="0.1.0",
    description="Order placement, payment retry and order lifecycle core for an e-commerce marketplace",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["marketplace_orders", "marketplace_orders.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.11.0",
            "httpx>=0.27.0",
            "aiosqlite>=0.19.0",
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
            "marketplace-outbox-publisher=marketplace_orders.workers.outbox_publisher:main",
            "marketplace-order-recovery=marketplace_orders.workers.recovery_worker:main",
            "marketplace-orders-api=marketplace_orders.api.main:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
