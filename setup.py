from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="wg-tls-tunnel",
    version="1.0.0",
    author="WG-TLS Tunnel Team",
    author_email="wgtunnel@example.com",
    description="Carry WireGuard UDP traffic through a multiplexed TLS tunnel",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/wgtunnel/wg-tls-tunnel",
    packages=find_packages(),
    py_modules=["main"],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "pycryptodome>=3.14.1",
        "flask>=2.0.0",
        "PyYAML>=5.4",
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'wgtunnel-server=main:server_main',
            'wgtunnel-client=main:client_main',
        ],
    },
    include_package_data=True,
    package_data={
        'server': ['testdata/*.pem'],
    },
)
