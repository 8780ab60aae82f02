# setup.py
"""Setup script for flowpilot."""

from setuptools import setup, find_packages

setup(
    name="flowpilot",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    package_data={
        "flowpilot.agent": ["templates/*.j2"],
    },
    install_requires=[
        "click>=8.0",
        "pyyaml>=6.0",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "structlog>=23.1",
        "httpx>=0.24",
        "jinja2>=3.1",
        "openai>=1.0",
        "python-ulid>=2.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "black>=23.0",
            "flake8>=6.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "flowpilot=cli.main:cli",
            "fp=cli.main:cli",  # Short alias
        ],
    },
    python_requires=">=3.9",
)
