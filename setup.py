from setuptools import find_packages, setup

setup(
    name="llm-doctor",
    version="0.1.0",
    description="Fake OpenAI-compatible inference server with passthrough and fault injection",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.12",
    install_requires=[
        "litestar>=2.12",
        "uvicorn>=0.30",
        "httpx[http2]>=0.27",
        "python-dotenv>=1.0",
        "prometheus-client>=0.20",
        "textual>=0.80",
        "rich>=13.7",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "pytest-timeout>=2.3",
            "respx>=0.21",
        ],
    },
    entry_points={
        "console_scripts": ["llm-doctor = application.main:main_sync"],
    },
)
