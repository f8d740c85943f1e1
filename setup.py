#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-adsearch',
    version='1.0.0',
    description='An asyncio Active Directory search client: paged searches, ranged attributes, referrals and nested group resolution',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'active directory'],
    author="Caltech IMSS ADS",
    author_email="imss-ads-staff@caltech.edu",
    url='https://github.com/caltechads/django-adsearch',
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'pytz',
        'ldap_filter',
        'python-ldap',
        'Django',
        'asgiref',
    ],
    extras_require={
        'test': [
            'python-ldap-faker',
            'pytest',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
