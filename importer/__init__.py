"""
Design
======

The importer loads product spreadsheets, already decoded into JSON rows by the
client, into the master catalog.

General goals:

* The request returns immediately; the import runs on a background thread and
  reports through an in-memory job which clients poll
* One bad row never fails an import: row problems are recorded against the
  job and the remaining rows carry on
* Re-submitting the same rows converges on the same catalog: products are
  matched by id then SKU, images and tenant associations by set comparison,
  and soft-deleted rows are restored rather than duplicated

The import process works like this:

1. A client submits up to 5000 rows. A Job is registered in the job registry
   and the engine is started on a daemon thread.
2. Categories, subcategories, tenants and the products the rows refer to are
   loaded once.
3. Rows are processed on a small thread pool. Each row is validated, resolved
   to a new or existing product, and its images are downloaded into product
   storage. Nothing is written to the database yet.
4. Products are created and updated in batches, tenant associations are
   reconciled, and image records are added, retired or re-ordered. Stored
   copies of retired images are deleted unless an order still shows them.
5. When asked to, every live product absent from the import is soft-deleted.
   Images and tenant associations survive so tenants can restore them.
6. The job is marked as completed.
"""
