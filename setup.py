from setuptools import find_packages, setup

setup(
    name='ipspgw',
    version='1.0.0',
    description='BLE IPSP to 6LoWPAN gateway daemon with UDP relay (OpenWRT)',
    author='isantolin',
    author_email='',
    packages=find_packages(include=['ipspgw', 'ipspgw.*']),
    python_requires='>=3.11',
    install_requires=[
        'bleak',
        'msgspec',
        'prometheus_client',
        'psutil',
        'tenacity',
        'transitions',
        'uvloop',
    # python3-uci is installed from the OpenWRT feed; off OpenWRT the daemon runs on defaults.
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'ipspgw=ipspgw.daemon:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
)
