"""Build peerpair package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peerpair",
    version="0.1.0",
    description="Anonymous one-to-one WebRTC chat with a WebSocket relay",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=("tests*", "testing*")),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.6",
        "click",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13",
    ],
    extras_require={
        "dev": [
            "cryptography",
            "pytest",
            "pytest-asyncio>=0.23",
            "pytest-timeout",
        ],
    },
    entry_points={
        "console_scripts": [
            "peerpair-relay=peerpair.relay.run:cli",
            "peerpair-chat=peerpair.client.run:cli",
        ],
    },
)
