"""
Companies module: tenant companies, CRM contacts, client services and MRR.
"""
