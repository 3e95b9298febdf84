#!/usr/bin/env python3
"""
Setup script for VoiceChat - Hands-free voice chat with hosted LLMs
"""
from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

# Read version from the package or set default
def get_version():
    try:
        with open(os.path.join(this_directory, 'src', 'voicechat', '__init__.py'), 'r') as f:
            for line in f:
                if line.startswith('__version__'):
                    return line.split('=', 1)[1].strip().strip('"\'')
    except FileNotFoundError:
        pass
    return "1.0.0"

setup(
    name="voicechat",
    version=get_version(),
    author="VoiceChat Team",
    author_email="info@voicechat.local",
    description="Hands-free voice chat with hosted LLMs through a credential-holding proxy",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    package_dir={"": "src"},
    include_package_data=True,
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Sound/Audio :: Speech",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    keywords="ai voice-chat llm nvidia openai gemini tts proxy",
    python_requires=">=3.9",
    install_requires=[
        "PyYAML>=6.0",
        "requests>=2.25.0",
        "flask>=2.0.0",
        "flask-cors>=3.0.0",
        "python-dotenv>=1.0.0",
        "pyttsx3>=2.90",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "black>=22.0.0",
            "flake8>=4.0.0",
            "mypy>=0.950",
        ],
    },
    entry_points={
        "console_scripts": [
            "voicechat=voicechat.cli:main",
            "voicechat-proxy=voicechat.proxy_server:main",
        ],
    },
)
