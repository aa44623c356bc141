"""Static reference material injected into every deep-audit prompt."""

APPROVED_CONTRACTORS = """\
APPROVED CONTRACTOR LIST (INTERNAL REGISTER):
1. BrightSide Care Pty Ltd (ABN: 51 824 753 556) - Status: ACTIVE, Compliant
2. Green Thumb Gardening (ABN: 12 345 678 901) - Status: ACTIVE, Compliant
3. Fast Transport Services (ABN: 123 456 789) - Status: ACTIVE, Compliant
4. Support Warriors (ABN: 99 888 777 666) - Status: REVIEW_PENDING (Missing Insurance Cert)
"""

FUNDING_KNOWLEDGE_BASE = """\
SUBSIDY AND FUNDING RULES (SUPPORT AT HOME, 8 CLASSIFICATION LEVELS):

Daily rates by classification level:
- Level 1: $29.40 / day (~$10,731 / yr)
- Level 2: $43.93 / day (~$16,034 / yr)
- Level 3: $60.18 / day (~$21,965 / yr)
- Level 4: $81.36 / day (~$29,696 / yr)
- Level 5: $108.76 / day (~$39,697 / yr)
- Level 6: $131.82 / day (~$48,114 / yr)
- Level 7: $159.31 / day (~$58,148 / yr)
- Level 8: $213.99 / day (~$78,106 / yr)

Remote area loadings (Modified Monash Model), applied to the reasonable price:
- MMM 1-4: standard pricing.
- MMM 5: +15%.
- MMM 6: +40%.
- MMM 7: +50%.

Dual funding schemes (double dipping):
- Continence Aids Payment Scheme ('caps_continence'): bulk continence pads billed to the
  package require a documented clinical need above the scheme allowance.
- Stoma Appliance Scheme ('sas_stoma'): stoma products are not payable from the package;
  nursing assistance with stoma care is.
- National Diabetes Services Scheme ('ndss_diabetes'): full-price diabetes consumables
  are not payable from the package.
- Hearing Services Program: hearing aid invoices must show the program was used first.
- DVA Gold Card: nursing or medical services should be billed to DVA, not the package.

Service groups (quarterly budgets apply): Clinical Care, Independence, Everyday Living.

Assistive technology: items under $1500 may be approved if allowed in the care plan;
items over $1500 require a specific written approval on the client file.

Exclusions: general income support, rent, utilities (unless life support), gambling, holidays.
"""
