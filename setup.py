"""
Setup script for company-search project.

Allows development installation with `pip install -e .`
"""

from setuptools import setup, find_packages

setup(
    name="company-search",
    version="0.1.0",
    packages=find_packages(include=["company_search", "company_search.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pymongo>=4.6",
        "python-dotenv>=1.0",
        "pydantic>=2.5",
        "tenacity>=9.2",
        "langchain-core>=0.3",
        "langchain-openai>=0.2",
        "numpy>=1.26",
        "json-repair>=0.25",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
)
