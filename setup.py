import os
import setuptools

install_requires = [
    'acme >= 2.11.0',
    'asn1crypto >= 1.4.0',
    'cryptography >= 42.0.0',
    'idna >= 3.4',
    'josepy >= 1.13.0',
    'requests >= 2.25.1',
    'pyyaml >= 5.3.1',
]

extras_require = {
    # Test dependencies
    'tests': [
        'pylint',
        'pytest >= 6.2.0',
        'pytest-cov >= 2.10.1',
        'requests-mock >= 1.7.0',
    ]
}

# Generate minimum dependencies
extras_require['tests-min'] = [dep.replace('>=', '==') for dep in extras_require['tests']]
if os.getenv('ACME_RENEWER_MIN_DEPS', False):
    install_requires = [dep.replace('>=', '==') for dep in install_requires]

setuptools.setup(
    name="acme-renewer",
    version="0.1",
    description="Python application that renews ACME certificates following the ACME Renewal Information "
                "(ARI) suggested windows and the certificates expiration dates.",
    packages=['acme_renewer'],
    entry_points={
        'console_scripts': [
            'acme-renewer = acme_renewer.acme_renewer:main'
        ]
    },
    classifiers=(
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: OS Independent",
    ),
    python_requires='>=3.8',
    install_requires=install_requires,
    extras_require=extras_require
)
