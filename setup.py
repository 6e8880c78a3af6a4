from setuptools import setup, find_packages

setup(
    name="codebridge",
    version="0.1.0",
    description="Stdio sidecar and session orchestrator for OpenCode chat sessions",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "httpx>=0.27.0",
        "python-dotenv>=1.0.0",
        "rich>=13.0.0",
        "typer>=0.12.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "codebridge=codebridge.ui.cli:run",
        ],
    },
    python_requires=">=3.10",
)
