from setuptools import setup, find_packages

setup(
    name="crossfire",
    version="1.0.0",
    description="CROSSFIRE: multi-language detection template engine",
    author="crossfire maintainers",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "requests",
        "pyyaml",
        "colorama",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
)
