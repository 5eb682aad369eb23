#!/usr/bin/env python3
"""
Setup configuration for the account aggregation backend package
"""

from setuptools import setup, find_namespace_packages

setup(
    name="account-aggregation-backend",
    version="1.0.0",
    description="Account aggregation, caching, reconciliation and trade execution backend",
    packages=find_namespace_packages(include=["routes", "services", "utils", "utils.*"]),
    py_modules=["api_server"],
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        "pydantic>=2.0",
        "python-decouple>=3.8",
        "python-dotenv>=1.0.0",
        "PyJWT>=2.8.0",
        "snaptrade-python-sdk>=11.0.0,<12",
        "plaid-python>=20.0.0",
        "httpx>=0.25.0",
        "SQLAlchemy>=2.0",
        "APScheduler>=3.10,<4",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.10.0",
        ],
    },
)
