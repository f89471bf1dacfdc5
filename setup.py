from setuptools import setup, find_packages

setup(
    name="admission",
    version="0.1.0",
    packages=find_packages(include=["admission", "admission.*"]),
    python_requires=">=3.12",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.2",
        "redis>=5.0.1",
        "uvicorn>=0.27",
    ],
    entry_points={
        "console_scripts": [
            "admission=admission.app.main:run",
        ],
    },
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
