from setuptools import find_packages, setup

setup(
    name="orchestration-backend",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["app", "database"],
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "sqlalchemy>=2.0",
        "redis>=5.0",
        "aiohttp>=3.9",
        "pyyaml>=6.0",
        "python-dotenv>=1.0",
        "alembic>=1.13",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    include_package_data=True,
    package_data={"": ["*.yaml"]},
    data_files=[("config", ["config/orchestration.yaml"])],
    description="Job and transaction orchestration backend for document and video AI processing",
    author="Andreas Malathouras",
    author_email="steelstridertgm@gmail.com",
)
