from setuptools import setup, find_packages

setup(
    name="tempoproxy",
    version="0.1.0",
    packages=find_packages(include=["tempoproxy", "tempoproxy.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn",
        "httpx",
        "pydantic",
        "pydantic-settings",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "respx",
        ],
    },
)
