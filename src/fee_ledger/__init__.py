'''
Fee ledger and reconciliation service for the school administration platform.
'''
